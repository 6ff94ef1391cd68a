import argparse


def create_parser():
    """Create the command line argument parser."""
    parser = argparse.ArgumentParser(
        description="Convert newsletters and articles into Kindle-ready EPUB files"
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output (DEBUG level)",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress all output except errors (ERROR level)",
    )
    parser.add_argument(
        "--no-logo",
        action="store_true",
        help="Do not print the banner",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the webhook and API server")
    serve.add_argument("--host", default="127.0.0.1", help="Interface to bind (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Port to listen on (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser(
        "purge-artifacts",
        help="Delete stored books older than the download retention period",
    )

    convert = subparsers.add_parser("convert", help="Convert a URL or local HTML file to EPUB")
    convert.add_argument("source", help="Article URL or path to an .html file")
    convert.add_argument(
        "-o",
        "--output",
        default=".",
        help="Directory to write the book to (default: current directory)",
    )
    convert.add_argument("--title", help="Override the extracted title")
    convert.add_argument("--author", help="Override the extracted author")
    convert.add_argument(
        "--kindle",
        metavar="KINDLE_EMAIL",
        help="Also email the book to this @kindle.com address",
    )
    return parser


def parse_args(args=None):
    """Parse command line arguments."""
    parser = create_parser()
    return parser.parse_args(args)


def main(argv=None):
    """Entry point for the CLI command.
    Parses arguments and delegates to main module for execution.
    """
    from nl2kindle.main import display_logo, run_main

    args = parse_args(argv)
    if not args.no_logo and not args.quiet:
        display_logo()
    return run_main(args)
