import logging
import textwrap
from pathlib import Path

import colorama

from nl2kindle.config import load_settings
from nl2kindle.errors import ContentFetchError
from nl2kindle.logger import colored_text, get_logger, setup_logging

logger = get_logger("main")


def display_logo():
    """Display the nl2kindle ASCII art logo with color."""
    logo = textwrap.dedent(
        r"""
          _ ____  _    _           _ _
  _ __  | |___ \| | _(_)_ __   __| | | ___
 | '_ \ | | __) | |/ / | '_ \ / _` | |/ _ \
 | | | || |/ __/|   <| | | | | (_| | |  __/
 |_| |_||_|_____|_|\_\_|_| |_|\__,_|_|\___|
        """
    )
    print(colored_text(logo, colorama.Fore.CYAN))
    print(colored_text("Newsletters to Kindle", colorama.Fore.YELLOW))


def _log_level(args) -> int:
    if args.verbose:
        return logging.DEBUG
    if args.quiet:
        return logging.ERROR
    return logging.INFO


def run_serve(args, settings) -> int:
    import uvicorn

    logger.info(f"Starting server on {args.host}:{args.port} (env={settings.env})")
    uvicorn.run(
        "nl2kindle.api.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )
    return 0


def run_init_db(settings) -> int:
    from nl2kindle.db import create_db_engine, init_db

    init_db(create_db_engine(settings.database_url))
    return 0


def run_purge_artifacts(settings) -> int:
    from nl2kindle.api.deps import build_services

    services = build_services(settings)
    purged = services.pipeline.purge_expired_artifacts()
    print(colored_text(f"Purged {purged} expired book(s)", colorama.Fore.GREEN))
    return 0


def run_convert(args, settings) -> int:
    from nl2kindle.email.epub.converter import EpubOptions, generate_epub_file, write_generated_file
    from nl2kindle.email.kindle import KindleDeliveryService, validate_kindle_email
    from nl2kindle.email.send_email import EmailSender
    from nl2kindle.extraction import (
        extract_content_from_url,
        extract_metadata,
        merge_metadata,
        validate_content,
    )
    from nl2kindle.sanitizer import sanitize_html

    if args.kindle and not validate_kindle_email(args.kindle):
        logger.error(f"Not a Kindle address: {args.kindle}")
        return 2

    source = args.source
    if source.startswith(("http://", "https://")):
        try:
            extracted = extract_content_from_url(source, timeout=settings.fetch_timeout)
        except ContentFetchError as e:
            logger.error(str(e))
            return 1
        content = extracted.html
        overrides = {"title": extracted.title, "author": extracted.author, "source": extracted.source}
    else:
        path = Path(source)
        if not path.is_file():
            logger.error(f"File not found: {path}")
            return 1
        raw = path.read_text(encoding="utf-8")
        overrides = {"title": extract_metadata(raw).title}
        content = sanitize_html(raw)

    validation = validate_content(content)
    if not validation.is_valid:
        logger.error(f"Content rejected: {', '.join(validation.errors)}")
        return 1

    metadata = merge_metadata(extract_metadata(content), overrides)
    metadata = merge_metadata(metadata, {"title": args.title, "author": args.author})

    generated = generate_epub_file(
        content,
        metadata,
        EpubOptions(timeout=settings.conversion_timeout, executable=settings.ebook_convert_path),
    )
    output_path = write_generated_file(generated, args.output)
    print(colored_text(f"Saved {output_path} ({generated.size} bytes)", colorama.Fore.GREEN))

    if args.kindle:
        sender = EmailSender(
            smtp_server=settings.smtp_server,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            sender_address=settings.smtp_from,
        )
        result = KindleDeliveryService(sender).send_to_kindle(str(output_path), args.kindle, metadata.title)
        if not result.success:
            logger.error(f"Kindle delivery failed: {result.error}")
            return 1
        print(colored_text(f"Sent to {args.kindle}", colorama.Fore.MAGENTA))
    return 0


def run_main(args) -> int:
    setup_logging(level=_log_level(args))
    settings = load_settings()

    if args.command == "serve":
        return run_serve(args, settings)
    if args.command == "init-db":
        return run_init_db(settings)
    if args.command == "purge-artifacts":
        return run_purge_artifacts(settings)
    if args.command == "convert":
        return run_convert(args, settings)

    logger.error(f"Unknown command: {args.command}")
    return 2
