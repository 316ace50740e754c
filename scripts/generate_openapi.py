"""Generate and persist the OpenAPI schema for the change governance service."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from fastapi.openapi.utils import get_openapi

from changegate.main import create_app


def build_schema() -> dict:
    app = create_app()
    return get_openapi(
        title=app.title,
        version=app.version,
        routes=app.routes,
        description=app.description,
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate OpenAPI schema")
    parser.add_argument(
        "--output",
        default="openapi.json",
        help="Path to write the OpenAPI schema (default: openapi.json)",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Exit non-zero if the file at --output differs from the generated schema.",
    )
    args = parser.parse_args()

    rendered = json.dumps(build_schema(), indent=2, sort_keys=True) + "\n"
    output_path = Path(args.output)
    if args.check:
        current = output_path.read_text(encoding="utf-8") if output_path.exists() else ""
        if current != rendered:
            raise SystemExit(f"{output_path} is out of date; rerun scripts/generate_openapi.py")
        print(f"{output_path} is up to date")
        return
    output_path.write_text(rendered, encoding="utf-8")
    print(f"OpenAPI schema written to {output_path}")


if __name__ == "__main__":
    main()
