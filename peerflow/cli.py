"""Command line entry point.

Usage:
    peerflow serve [--host HOST] [--port PORT] [--reload] [--workers N]
    peerflow init-db [--template-dir DIR]
    peerflow validate-templates [--template-dir DIR]
"""

import argparse
import asyncio
import sys
from pathlib import Path

from peerflow.config import get_settings
from peerflow.exceptions import TemplateValidationError
from peerflow.logging_config import configure_logging, get_logger

logger = get_logger(__name__)


async def init_db(template_dir: Path) -> int:
    """Create the schema and load every template file."""
    from peerflow.database import close_db, create_schema, unit_of_work
    from peerflow.template_loader import load_template_dir

    try:
        await create_schema()
        async with unit_of_work() as session:
            inserted = await load_template_dir(session, template_dir)
    except TemplateValidationError as e:
        logger.error("template_load_failed", template_id=e.template_id, errors=e.errors)
        return 1
    finally:
        await close_db()

    logger.info("database_initialized", templates_inserted=inserted)
    return 0


def validate_templates(template_dir: Path) -> int:
    """Check template files without touching the database."""
    from peerflow.registry import template_from_document
    from peerflow.template_loader import parse_template, read_template_files, validate_template

    failed = 0
    for data in read_template_files(template_dir):
        try:
            doc = parse_template(data)
        except TemplateValidationError as e:
            logger.error("template_invalid", template_id=e.template_id, errors=e.errors)
            failed += 1
            continue
        errors = validate_template(doc)
        if errors:
            logger.error("template_invalid", template_id=doc.id, errors=errors)
            failed += 1
        else:
            template = template_from_document(doc)
            logger.info(
                "template_valid",
                template_id=template.id,
                initial_stage=template.initial_stage.value,
                edges=len(template.edges),
            )
    return 1 if failed else 0


def serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run(
        "peerflow.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=args.workers if not args.reload else 1,
        log_level=args.log_level,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="peerflow",
        description="Template-driven progression engine for peer review and journal clubs",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve_parser = sub.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload (development)")
    serve_parser.add_argument("--workers", type=int, default=1, help="Number of worker processes")
    serve_parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        default="info",
    )

    for name, help_text in (
        ("init-db", "Create tables and load template files"),
        ("validate-templates", "Validate template files"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--template-dir", type=Path, default=None)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(level=settings.log_level, log_format=settings.log_format)

    if args.command == "serve":
        return serve(args)

    template_dir = args.template_dir or settings.template_dir
    if args.command == "init-db":
        return asyncio.run(init_db(template_dir))
    return validate_templates(template_dir)


if __name__ == "__main__":
    sys.exit(main())
