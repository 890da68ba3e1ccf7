"""
CSV import/export for robots and audit logs.
"""
import csv
import io
import json
from datetime import datetime
from typing import Optional, Dict, Any, Iterable, Iterator, Tuple, List

from .ageing import as_utc
from .part_issues import PART_CATALOG, UnknownPartError, parts_with_dates
from .status_rules import RUNNING_STATUSES, BREAKDOWN_STATUSES, WORK_TYPES, check_status_pair

LOG_EXPORT_HEADER = ["Client", "Site", "RBT ID", "Field", "Old Value", "New Value", "Updated By", "Time"]
DASHBOARD_EXPORT_HEADER = ["Site", "RBT", "Running Status", "Breakdown Status", "Work", "Ageing", "Last Updated"]
BULK_TEXT_FIELDS = ("cleaner_did", "tc_did", "cl_pcb_model", "tc_pcb_model")

PART_SEPARATOR = "; "
BIT_SEPARATOR = " • "


def _write_csv(header: List[str], rows: Iterable[List[Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(header)
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()


def _parse_json_object(value: Any) -> Optional[dict]:
    if isinstance(value, dict):
        return value
    if not isinstance(value, str) or not value.startswith("{"):
        return None
    try:
        parsed = json.loads(value)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _is_single_part(obj: dict) -> bool:
    return "dispatch_date" in obj or "delivery_date" in obj


# ---------- Part-issue summaries ----------

def format_part_summary(issues: Optional[dict]) -> str:
    """PART: dispatch=<d> • delivery=<d>; ... for parts carrying at least one date."""
    chunks = []
    for part, meta in parts_with_dates(issues).items():
        bits = []
        if meta["dispatch_date"]:
            bits.append(f"dispatch={meta['dispatch_date']}")
        if meta["delivery_date"]:
            bits.append(f"delivery={meta['delivery_date']}")
        chunks.append(f"{part}: {BIT_SEPARATOR.join(bits)}")
    return PART_SEPARATOR.join(chunks) or "-"


def parse_part_summary(value: str) -> Dict[str, Tuple[Optional[str], Optional[str]]]:
    out = {}
    if not value or value.strip() == "-":
        return out
    for chunk in value.split(PART_SEPARATOR):
        part, _, rest = chunk.partition(": ")
        dispatch = delivery = None
        for bit in rest.split(BIT_SEPARATOR):
            key, _, date_value = bit.partition("=")
            if key == "dispatch":
                dispatch = date_value or None
            elif key == "delivery":
                delivery = date_value or None
        out[part.strip()] = (dispatch, delivery)
    return out


def compact_log_values(field: Optional[str], old_value: Any, new_value: Any) -> Tuple[str, str]:
    field = field or ""
    old_obj = _parse_json_object(old_value)
    new_obj = _parse_json_object(new_value)
    if field.startswith("part_issues") and (old_obj or new_obj):
        part = field.split(".", 2)[1] if field.count(".") == 1 else None

        def _as_map(obj):
            if not obj:
                return {}
            if part and _is_single_part(obj):
                return {part: obj}
            return obj

        return format_part_summary(_as_map(old_obj)), format_part_summary(_as_map(new_obj))

    def _plain(v):
        if v is None or v == "":
            return "-"
        return v if isinstance(v, str) else json.dumps(v, default=str)

    return _plain(old_value), _plain(new_value)


# ---------- Exports ----------

def export_logs_csv(logs: Iterable[Any]) -> str:
    rows = []
    for log in logs:
        ts = as_utc(log.timestamp)
        old_str, new_str = compact_log_values(log.field, log.old_value, log.new_value)
        rows.append([
            log.client or "-",
            log.site or "-",
            log.rbt_id or "-",
            log.field or "-",
            old_str,
            new_str,
            log.updated_by or "-",
            ts.strftime("%d-%m-%Y %H:%M:%S") if ts else "-",
        ])
    return _write_csv(LOG_EXPORT_HEADER, rows)


def export_dashboard_csv(rows: Iterable[Dict[str, Any]]) -> str:
    out = []
    for row in rows:
        last_updated = row.get("last_updated")
        out.append([
            row.get("site"),
            row.get("id"),
            row.get("running_status"),
            row.get("breakdown_status"),
            row.get("work") or "-",
            row.get("ageing"),
            last_updated.strftime("%Y-%m-%d %H:%M") if isinstance(last_updated, datetime) else "-",
        ])
    return _write_csv(DASHBOARD_EXPORT_HEADER, out)


# ---------- Bulk upload ----------

def _clean(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _one_hot(row: Dict[str, str], prefix: str) -> str:
    # Legacy sheets carry one column per option, e.g. running_status:Manual=true
    for key, value in row.items():
        if key.startswith(f"{prefix}:") and _clean(value).lower() == "true":
            return key[len(prefix) + 1:]
    return ""


def _choice(row: Dict[str, str], column: str, legacy_prefix: str, allowed: Tuple[str, ...]) -> Optional[str]:
    value = _clean(row.get(column)) or _one_hot(row, legacy_prefix)
    if not value:
        return None
    if value not in allowed:
        raise ValueError(f"Invalid {column}: {value!r}")
    return value


def parse_part_columns(row: Dict[str, str]) -> Dict[str, dict]:
    # A sheet may carry either date column on its own
    raw_parts = []
    for key in row:
        pieces = key.split(":")
        if len(pieces) == 3 and pieces[0] == "part_issue" and pieces[2] in ("dispatch_date", "delivery_date"):
            if pieces[1] not in raw_parts:
                raw_parts.append(pieces[1])

    issues = {}
    for raw_part in raw_parts:
        part = raw_part.strip().upper()
        if part not in PART_CATALOG:
            raise UnknownPartError(part)
        dispatch = _clean(row.get(f"part_issue:{raw_part}:dispatch_date")) or None
        delivery = _clean(row.get(f"part_issue:{raw_part}:delivery_date")) or None
        if dispatch or delivery:
            issues[part] = {"selected": True, "dispatch_date": dispatch, "delivery_date": delivery}
    return issues


def parse_bulk_row(row: Dict[str, str]) -> Optional[Dict[str, Any]]:
    """
    Parse one bulk-upload row.

    Returns None when the row has no site or rbt_id. Raises ValueError for
    values outside the status enumerations or the part catalog, and for a
    running/breakdown pair that contradicts itself (e.g. Manual with N/A).
    """
    row = {(k or "").strip(): v for k, v in row.items()}
    site = _clean(row.get("site"))
    rbt_id = _clean(row.get("rbt_id"))
    if not site or not rbt_id:
        return None

    fields = {}
    for name in BULK_TEXT_FIELDS:
        fields[name] = _clean(row.get(name)) or None
    if not fields["tc_did"]:
        fields["tc_did"] = _clean(row.get("to_did")) or None

    running = _choice(row, "running_status", "running_status", RUNNING_STATUSES)
    breakdown = _choice(row, "breakdown_status", "breakdown_status", BREAKDOWN_STATUSES)
    work = _choice(row, "work", "work_status", WORK_TYPES)
    check_status_pair(running, breakdown)
    if running:
        fields["running_status"] = running
    if breakdown:
        fields["breakdown_status"] = breakdown
    if work:
        fields["work"] = work

    return {
        "site": site,
        "rbt_id": rbt_id,
        "fields": fields,
        "part_issues": parse_part_columns(row),
    }


def read_bulk_csv(stream) -> Iterator[Tuple[int, Dict[str, str]]]:
    reader = csv.DictReader(stream)
    # Line 1 is the header
    for row_num, row in enumerate(reader, start=2):
        yield row_num, row
