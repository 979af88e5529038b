#!/usr/bin/env python3
"""
Export the OpenAPI specification of the Evently Escrow API.

Usage:
    python miscellaneous/export_openapi.py [output_file]
"""

import json
import sys
import os

# Add the project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from evently_escrow.main import app  # noqa: E402


def export_openapi_spec(output_file: str = "openapi.json") -> bool:
    """Write the OpenAPI schema to ``output_file`` and list its routes."""
    try:
        openapi_schema = app.openapi()
    except Exception as e:
        print(f"❌ Failed to build OpenAPI specification: {e}")
        return False

    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(openapi_schema, f, indent=2, ensure_ascii=False)

    info = openapi_schema.get("info", {})
    paths = openapi_schema.get("paths", {})
    print(f"✅ {info.get('title', 'API')} {info.get('version', '')} exported to: {output_file}")
    print(f"🔗 {sum(len(methods) for methods in paths.values())} operations:")
    for path in sorted(paths):
        print(f"  {', '.join(method.upper() for method in paths[path])} {path}")
    return True


def main():
    """Main function."""
    output_file = sys.argv[1] if len(sys.argv) > 1 else "openapi.json"
    if not export_openapi_spec(output_file):
        sys.exit(1)


if __name__ == "__main__":
    main()
