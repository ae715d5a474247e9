import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from sinsuan import create_app
from sinsuan.naming import RECORD_TABLE, resolve_name
from sinsuan.storage import ProvisioningError, ensure_ready, list_tenant_tables, upgrade_table


def main():
    parser = argparse.ArgumentParser(
        description="Provision tenant visit tables and migrate legacy ones to the current schema."
    )
    parser.add_argument(
        "domains",
        nargs="*",
        help="Domains to provision (example: blog.example.com docs.example.com).",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Upgrade every existing visit_record_* table.",
    )
    args = parser.parse_args()
    if not args.domains and not args.all:
        parser.error("pass at least one domain or --all")

    app = create_app()
    store = app.extensions["sinsuan"].store
    failures = 0
    with store.lend() as conn:
        for domain in args.domains:
            try:
                ensure_ready(conn, domain)
                print(f"{domain}: ready ({resolve_name(RECORD_TABLE, domain)})")
            except ProvisioningError as exc:
                failures += 1
                print(f"{domain}: failed ({exc})")

        if args.all:
            for table_name in list_tenant_tables(conn):
                try:
                    upgraded = upgrade_table(conn, table_name)
                    print(f"{table_name}: {'upgraded' if upgraded else 'current'}")
                except ProvisioningError as exc:
                    failures += 1
                    print(f"{table_name}: failed ({exc})")

    app.extensions["sinsuan"].shutdown()
    if failures:
        sys.exit(1)


if __name__ == "__main__":
    main()
