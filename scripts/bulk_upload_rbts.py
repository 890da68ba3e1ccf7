"""
Bulk upload robots from a CSV export.

Usage:
    python scripts/bulk_upload_rbts.py <csv_path> [--client NAME] [--dry-run]

Expected columns:
    - site, rbt_id (required; rows without them are skipped)
    - cleaner_did, tc_did (or legacy to_did), cl_pcb_model, tc_pcb_model
    - running_status, breakdown_status, work
      (legacy sheets may use one-hot columns such as running_status:Manual=true)
    - part_issue:<PART>:dispatch_date, part_issue:<PART>:delivery_date

Without --client the sites are created without a client and can be moved
later with migrate_sites_to_clients.py.
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load environment variables first
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError as e:
    print(f"WARNING: Could not load .env file: {e}")

database_url = os.getenv("DATABASE_URL", "sqlite:///./var/dev.db")

if database_url.startswith("postgresql"):
    try:
        import psycopg2  # noqa: F401
    except ImportError:
        print("ERROR: PostgreSQL database detected but psycopg2 is not installed.")
        print("Please install it with: pip install psycopg2-binary")
        sys.exit(1)

try:
    from sqlalchemy.exc import SQLAlchemyError
    from rbt_dashboard.db import SessionLocal
    from rbt_dashboard.services.csv_io import parse_bulk_row, read_bulk_csv
    from rbt_dashboard.services.robots import find_client, upsert_bulk_row
except ImportError as e:
    print(f"ERROR: Failed to import database components: {e}")
    sys.exit(1)


def bulk_upload(csv_path: str, client_name: str = None, dry_run: bool = False):
    if not os.path.exists(csv_path):
        print(f"ERROR: File not found: {csv_path}")
        sys.exit(1)

    db = SessionLocal()
    created_count = 0
    updated_count = 0
    skipped_count = 0
    error_count = 0

    try:
        client = None
        if client_name:
            client = find_client(db, client_name)
            if not client:
                print(f"ERROR: Client not found: {client_name}")
                sys.exit(1)

        print(f"{'[DRY RUN] ' if dry_run else ''}Uploading {csv_path} -> {client.name if client else '(no client)'}\n")

        with open(csv_path, "r", encoding="utf-8-sig", newline="") as f:
            for row_num, row in read_bulk_csv(f):
                try:
                    parsed = parse_bulk_row(row)
                except ValueError as e:
                    error_count += 1
                    print(f"Row {row_num}: [ERROR] {e}")
                    continue
                if parsed is None:
                    skipped_count += 1
                    print(f"Row {row_num}: skipped (site or rbt_id empty)")
                    continue

                label = f"{parsed['site']}/{parsed['rbt_id']}"
                if dry_run:
                    print(f"Row {row_num}: [DRY RUN] {label} {parsed['fields']} parts={sorted(parsed['part_issues'])}")
                    continue
                try:
                    _, created = upsert_bulk_row(db, client, parsed)
                except (SQLAlchemyError, ValueError) as e:
                    db.rollback()
                    error_count += 1
                    print(f"Row {row_num}: [ERROR] {label}: {e}")
                    continue
                if created:
                    created_count += 1
                    print(f"Row {row_num}: [OK] created {label}")
                else:
                    updated_count += 1
                    print(f"Row {row_num}: [OK] updated {label}")
    finally:
        db.close()

    print(f"\n{'=' * 60}")
    print("Bulk upload complete!")
    print(f"  Created: {created_count}")
    print(f"  Updated: {updated_count}")
    print(f"  Skipped: {skipped_count}")
    print(f"  Errors: {error_count}")
    print(f"{'=' * 60}")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python scripts/bulk_upload_rbts.py <csv_path> [--client NAME] [--dry-run]")
        sys.exit(1)

    client_arg = None
    if "--client" in sys.argv:
        idx = sys.argv.index("--client")
        if idx + 1 >= len(sys.argv):
            print("ERROR: --client requires a name")
            sys.exit(1)
        client_arg = sys.argv[idx + 1]

    bulk_upload(sys.argv[1], client_name=client_arg, dry_run="--dry-run" in sys.argv or "-d" in sys.argv)
