"""
Import a nested JSON document export into the database.

Each <collection>.json file in the export directory maps document ids to
document bodies. A body may carry a "__collections__" key holding its
sub-collections in the same shape:

    clients.json   {client: {"__collections__": {"sites": {site: {"__collections__":
                     {"rbts": {rbt_id: {..., "__collections__": {"history": {date: {...}}}}}}}}}}}
    sites.json     legacy layout, {site: {"__collections__": {"rbts": {...}}}} (imported without a client)
    rbt_logs.json  {doc_id: {client, site, rbt_id, field, old_value, new_value, updated_by, timestamp}}

Usage:
    python scripts/import_json_export.py <export_dir> [--dry-run]
"""
import sys
import os
import json
from datetime import datetime, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

try:
    from sqlalchemy.exc import SQLAlchemyError
    from rbt_dashboard.db import SessionLocal
    from rbt_dashboard.models.models import Client, Robot, RobotHistory, RobotLog
    from rbt_dashboard.services.audit import serialize_value
    from rbt_dashboard.services.part_issues import normalize_part_issues
    from rbt_dashboard.services.robots import find_client, find_robot, ensure_site, TEXT_FIELDS
    from rbt_dashboard.services.status_rules import RUNNING_STATUSES, BREAKDOWN_STATUSES, WORK_TYPES
except ImportError as e:
    print(f"ERROR: Failed to import database components: {e}")
    sys.exit(1)


stats = {"clients": 0, "sites": 0, "rbts": 0, "history": 0, "rbt_logs": 0, "skipped": 0}


def parse_ts(value):
    """Exported timestamps come as {"_seconds": ..} objects, epoch numbers or ISO strings."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        seconds = value.get("_seconds", value.get("seconds"))
        if seconds is None:
            return None
        return datetime.fromtimestamp(float(seconds), tz=timezone.utc)
    if isinstance(value, (int, float)):
        # Millisecond epochs are common in JS exports
        return datetime.fromtimestamp(value / 1000 if value > 1e11 else value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _jsonable(value):
    if isinstance(value, dict):
        if "_seconds" in value:
            ts = parse_ts(value)
            return ts.isoformat() if ts else None
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def _sub(doc: dict, name: str) -> dict:
    return (doc.get("__collections__") or {}).get(name) or {}


def import_rbt(db, site, rbt_id: str, doc: dict):
    robot = find_robot(db, site, rbt_id)
    if robot is None:
        robot = Robot(site_id=site.id, rbt_id=rbt_id)
        db.add(robot)
    running = doc.get("running_status")
    breakdown = doc.get("breakdown_status")
    robot.running_status = running if running in RUNNING_STATUSES else "Auto"
    robot.breakdown_status = breakdown if breakdown in BREAKDOWN_STATUSES else "N/A"
    robot.work = doc.get("work") if doc.get("work") in WORK_TYPES else None
    robot.running_manual_at = parse_ts(doc.get("running_manual_at"))
    robot.running_not_running_at = parse_ts(doc.get("running_not_running_at"))
    robot.target_date = doc.get("target_date") or None
    robot.part_issues = normalize_part_issues(doc.get("part_issues"))
    for name in TEXT_FIELDS:
        setattr(robot, name, doc.get(name) or (doc.get("to_did") if name == "tc_did" else None) or None)
    robot.last_updated = parse_ts(doc.get("last_updated")) or datetime.now(timezone.utc)
    stats["rbts"] += 1

    for date_key, hist in _sub(doc, "history").items():
        client_name = site.client.name if site.client is not None else None
        row = db.query(RobotHistory).filter(
            RobotHistory.client == client_name,
            RobotHistory.site == site.name,
            RobotHistory.rbt_id == rbt_id,
            RobotHistory.date_key == date_key,
        ).first()
        if row is None:
            row = RobotHistory(client=client_name, site=site.name, rbt_id=rbt_id, date_key=date_key, data={})
            db.add(row)
        data = dict(row.data or {})
        data.update(_jsonable({k: v for k, v in hist.items() if k not in ("updated_by", "updated_at")}))
        row.data = data
        row.updated_by = hist.get("updated_by")
        row.updated_at = parse_ts(hist.get("updated_at") or hist.get("last_updated"))
        stats["history"] += 1


def import_sites(db, client, sites: dict):
    for site_name, site_doc in sites.items():
        site = ensure_site(db, client, site_name)
        if client is not None:
            site.client = client
        stats["sites"] += 1
        for rbt_id, rbt_doc in _sub(site_doc, "rbts").items():
            import_rbt(db, site, rbt_id, rbt_doc)
        print(f"Imported site: {client.name if client else '(no client)'}/{site_name}")


def import_clients(db, docs: dict):
    for client_name, client_doc in docs.items():
        client = find_client(db, client_name)
        if client is None:
            client = Client(name=client_name)
            db.add(client)
            db.flush()
        stats["clients"] += 1
        import_sites(db, client, _sub(client_doc, "sites"))


def import_logs(db, docs: dict):
    for _, doc in docs.items():
        if not doc.get("site") or not doc.get("rbt_id") or not doc.get("field"):
            stats["skipped"] += 1
            continue
        db.add(RobotLog(
            client=doc.get("client"),
            site=doc["site"],
            rbt_id=doc["rbt_id"],
            field=doc["field"],
            old_value=serialize_value(_jsonable(doc.get("old_value"))),
            new_value=serialize_value(_jsonable(doc.get("new_value"))),
            updated_by=doc.get("updated_by"),
            timestamp=parse_ts(doc.get("timestamp")) or datetime.now(timezone.utc),
        ))
        stats["rbt_logs"] += 1


HANDLERS = {
    "clients": import_clients,
    "sites": lambda db, docs: import_sites(db, None, docs),
    "rbt_logs": import_logs,
}


def run(export_dir: str, dry_run: bool = False):
    if not os.path.isdir(export_dir):
        print(f"ERROR: Directory not found: {export_dir}")
        sys.exit(1)

    files = sorted(f for f in os.listdir(export_dir) if f.endswith(".json"))
    db = SessionLocal()
    try:
        for file in files:
            collection = os.path.splitext(file)[0]
            handler = HANDLERS.get(collection)
            if handler is None:
                print(f"=== Skipping collection: {collection} (not imported) ===")
                continue
            print(f"\n=== Importing collection: {collection} ===")
            with open(os.path.join(export_dir, file), "r", encoding="utf-8") as f:
                handler(db, json.load(f))
            db.flush()
        if dry_run:
            db.rollback()
            print("\n[DRY RUN] No changes written.")
        else:
            db.commit()
            print("\nImport completed successfully!")
    except (SQLAlchemyError, ValueError) as e:
        db.rollback()
        print(f"ERROR: Import failed: {e}")
        sys.exit(1)
    finally:
        db.close()

    for key, value in stats.items():
        print(f"  {key}: {value}")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python scripts/import_json_export.py <export_dir> [--dry-run]")
        sys.exit(1)
    run(sys.argv[1], dry_run="--dry-run" in sys.argv)
