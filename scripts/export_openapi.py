#!/usr/bin/env python3
"""
Export the OpenAPI document of the Caseflow API.

Usage:
    python scripts/export_openapi.py
    python scripts/export_openapi.py --output docs/openapi/caseflow-api.json
"""

import argparse
import json
import os
import sys
from datetime import datetime, timezone

# Allow running from a checkout without installing the package
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

DEFAULT_OUTPUT = "docs/openapi/caseflow-api.json"


def export_openapi(output_path: str = None):
    from caseflow.api.cases.main import app

    schema = app.openapi()
    schema["info"]["x-exported-at"] = datetime.now(timezone.utc).isoformat()

    output_path = output_path or DEFAULT_OUTPUT
    os.makedirs(os.path.dirname(output_path), exist_ok=True)

    with open(output_path, "w") as f:
        json.dump(schema, f, indent=2)

    print(f"OpenAPI document exported to: {output_path}")
    print(f"   Title: {schema['info']['title']}")
    print(f"   Version: {schema['info']['version']}")
    print(f"   Paths: {len(schema['paths'])}")

    return schema


def main():
    parser = argparse.ArgumentParser(description="Export the Caseflow OpenAPI document")
    parser.add_argument("--output", "-o", help="Output file path")
    args = parser.parse_args()

    export_openapi(args.output)


if __name__ == "__main__":
    main()
