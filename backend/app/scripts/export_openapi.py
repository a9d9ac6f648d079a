from __future__ import annotations

import argparse
import json
from collections.abc import Sequence
from pathlib import Path

from backend.app.main import create_app


def main(argv: Sequence[str] | None = None) -> Path:
    parser = argparse.ArgumentParser(description="Write the Stratly OpenAPI schema to disk.")
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("openapi") / "openapi.json",
        help="Destination file (default: openapi/openapi.json).",
    )
    args = parser.parse_args(argv)

    schema_path: Path = args.output
    schema_path.parent.mkdir(parents=True, exist_ok=True)
    schema = create_app().openapi()
    schema_path.write_text(json.dumps(schema, indent=2, sort_keys=True), encoding="utf-8")
    print(f"Wrote OpenAPI schema with {len(schema.get('paths', {}))} paths to {schema_path}")
    return schema_path


if __name__ == "__main__":
    main()
