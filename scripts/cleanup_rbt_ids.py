"""
Delete robots whose id is not in the canonical RBT<n> form (e.g. "RBT 7",
"rbt7", "7"). History and log rows are left untouched.

Usage:
    python scripts/cleanup_rbt_ids.py [--client NAME] [--yes]

Without --yes the offending robots are only listed.
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
    from rbt_dashboard.models.models import Robot, Site
    from rbt_dashboard.services.robots import RBT_ID_PATTERN, find_client
except ImportError as e:
    print(f"ERROR: Failed to import database components: {e}")
    sys.exit(1)


def cleanup(client_name: str = None, apply: bool = False):
    db = SessionLocal()
    try:
        query = db.query(Site)
        if client_name:
            client = find_client(db, client_name)
            if not client:
                print(f"ERROR: Client not found: {client_name}")
                sys.exit(1)
            query = query.filter(Site.client_id == client.id)

        total = 0
        for site in query.order_by(Site.name.asc()).all():
            bad = [r for r in db.query(Robot).filter(Robot.site_id == site.id).all() if not RBT_ID_PATTERN.match(r.rbt_id or "")]
            if not bad:
                print(f"[OK] No bad RBT ids in {site.name}")
                continue
            print(f"Found {len(bad)} badly named RBTs in {site.name}: {', '.join(repr(r.rbt_id) for r in bad)}")
            if apply:
                for robot in bad:
                    db.delete(robot)
                db.commit()
                print(f"[OK] Cleaned {site.name}")
            total += len(bad)

        if apply:
            print(f"\nDeleted {total} RBTs.")
        else:
            print(f"\n{total} RBTs would be deleted. Re-run with --yes to delete them.")
    except SQLAlchemyError as e:
        db.rollback()
        print(f"ERROR: Cleanup failed: {e}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    client_arg = None
    if "--client" in sys.argv:
        idx = sys.argv.index("--client")
        client_arg = sys.argv[idx + 1] if idx + 1 < len(sys.argv) else None
    cleanup(client_arg, apply="--yes" in sys.argv)
