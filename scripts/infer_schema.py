"""
Scan robots and history rows and print the observed shape of their data as
JSON: per field the value types seen, whether every record carries it and up
to three example values. Useful before a migration to spot legacy keys.

Usage:
    python scripts/infer_schema.py [--out schema.json]
"""
import sys
import os
import json
from datetime import date, datetime

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

try:
    from rbt_dashboard.db import SessionLocal
    from rbt_dashboard.models.models import Robot, RobotHistory
except ImportError as e:
    print(f"ERROR: Failed to import database components: {e}")
    sys.exit(1)

MAX_EXAMPLES = 3
ROBOT_COLUMNS = [c.name for c in Robot.__table__.columns if c.name not in ("id", "site_id")]


def type_name(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, (datetime, date)):
        return "timestamp"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "map"
    return "string"


def infer(records) -> dict:
    count = 0
    fields = {}
    for record in records:
        count += 1
        for key, value in record.items():
            field = fields.setdefault(key, {"types": set(), "examples": [], "present": 0})
            t = type_name(value)
            field["types"].add(t)
            field["present"] += 1
            if len(field["examples"]) < MAX_EXAMPLES:
                text = json.dumps(value, default=str) if t in ("map", "array") else str(value)
                if text[:200] not in field["examples"]:
                    field["examples"].append(text[:200])
    return {
        "documents": count,
        "fields": {
            key: {
                "types": sorted(f["types"]),
                "required": f["present"] == count,
                "exampleValues": f["examples"],
            }
            for key, f in sorted(fields.items())
        },
    }


def main(out_path: str = None):
    db = SessionLocal()
    try:
        robots = ({c: getattr(r, c) for c in ROBOT_COLUMNS} for r in db.query(Robot).yield_per(500))
        schema = {"rbts": infer(robots)}
        history = (dict(h.data or {}) for h in db.query(RobotHistory).yield_per(500))
        schema["rbt_history.data"] = infer(history)
    finally:
        db.close()

    text = json.dumps(schema, indent=2)
    if out_path:
        with open(out_path, "w", encoding="utf-8") as f:
            f.write(text)
        print(f"[OK] Schema written to {out_path}")
    else:
        print(text)


if __name__ == "__main__":
    out = None
    if "--out" in sys.argv:
        idx = sys.argv.index("--out")
        out = sys.argv[idx + 1] if idx + 1 < len(sys.argv) else None
    main(out)
