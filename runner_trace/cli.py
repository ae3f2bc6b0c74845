"""Command-line interface for Runner Trace."""

import argparse
import logging

import uvicorn

from .proxy import DEFAULT_TARGET_URL, create_app
from .recorder import DEFAULT_BACKEND, Recorder


def run_serve(args: argparse.Namespace) -> None:
    """Run the inference gateway."""
    recorder = Recorder(logger=logging.getLogger("runner_trace.recorder"), backend=args.backend)
    app = create_app(args.target, recorder)

    print("Starting Runner Trace gateway...")
    print(f"  Listening on: http://{args.host}:{args.port}")
    print(f"  Runner URL:   {args.target}")
    print(f"  Backend:      {args.backend}")
    print(f"  Records:      http://{args.host}:{args.port}/records?model=<model>")
    print()

    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


def main():
    """Main entry point for the CLI."""
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(
        description="Runner Trace - Inference gateway that records runner traffic"
    )
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser(
        "serve", help="Start the gateway in front of an inference runner"
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port to listen on (default: 8080)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    serve_parser.add_argument(
        "--target",
        type=str,
        default=DEFAULT_TARGET_URL,
        help=f"Inference runner URL (default: {DEFAULT_TARGET_URL})",
    )
    serve_parser.add_argument(
        "--backend",
        type=str,
        default=DEFAULT_BACKEND,
        help=f"Backend name the runner is recorded under (default: {DEFAULT_BACKEND})",
    )

    args = parser.parse_args()

    if args.command == "serve":
        run_serve(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
