"""
Rewrite every robot's part_issues map for one client onto the current part
catalog. Stale keys from older catalogs (GUIDE WHEEL, LOAD WHEEL, LIMIT SWITCH,
...) are dropped, missing parts are added empty and today's history row
records the rewritten map.

Usage:
    python scripts/update_part_issues.py
    (prompts for the client name)
"""
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

try:
    from sqlalchemy.exc import SQLAlchemyError
    from rbt_dashboard.db import SessionLocal
    from rbt_dashboard.services.access import Actor, Role
    from rbt_dashboard.services.robots import find_client, canonicalize_part_issues
except ImportError as e:
    print(f"ERROR: Failed to import database components: {e}")
    sys.exit(1)

SCRIPT_ACTOR = Actor(uid="script", email="scripts/update_part_issues.py", role=Role.super_admin)


def update_part_issues(client_name: str):
    db = SessionLocal()
    try:
        client = find_client(db, client_name)
        if not client:
            print(f"ERROR: No client found: {client_name}")
            sys.exit(1)
        if not client.sites:
            print(f"No sites found for client: {client.name}")
            return
        changed = canonicalize_part_issues(db, client, SCRIPT_ACTOR)
        print(f"[OK] Completed: {len(client.sites)} sites, {changed} RBTs updated for client \"{client.name}\"")
    except SQLAlchemyError as e:
        db.rollback()
        print(f"ERROR: Update failed: {e}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    name = input("Enter the client name: ").strip()
    if not name:
        print("ERROR: Client name is required")
        sys.exit(1)
    update_part_issues(name)
