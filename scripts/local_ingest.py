"""Enqueue extraction tasks from local .eml files.

Usage:
  python scripts/local_ingest.py TENANT_CODE [directory] [pattern] [source]

Examples:
  python scripts/local_ingest.py acme
  python scripts/local_ingest.py acme sample "*.eml" invoices
"""

from __future__ import annotations

import sys
from typing import Optional

from extraction_queue.core.config import get_settings
from extraction_queue.core.logging import setup_logging
from extraction_queue.db.session import SessionLocal
from extraction_queue.local.ingest import ingest_eml_files


def main(argv: Optional[list[str]] = None) -> None:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        raise SystemExit(__doc__)
    tenant_code = argv[0]
    directory = argv[1] if len(argv) >= 2 else "sample"
    pattern = argv[2] if len(argv) >= 3 else "*.eml"
    source = argv[3] if len(argv) >= 4 else "default"

    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)

    db = SessionLocal()
    try:
        result = ingest_eml_files(db, tenant_code=tenant_code, directory=directory, pattern=pattern, source=source)
        print({"tenant": tenant_code, "directory": directory, "pattern": pattern, **result})
    finally:
        db.close()


if __name__ == "__main__":
    main()
