from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Client
from .ageing import as_utc
from .robots import list_robots, robot_to_row
from .status_rules import AUTO, MANUAL, NOT_RUNNING


def filter_rows(
    rows: List[Dict[str, Any]],
    site: Optional[str] = None,
    running_status: Optional[str] = None,
    breakdown_status: Optional[str] = None,
    work: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    result = rows
    if site:
        result = [r for r in result if r["site"] == site]
    if running_status:
        result = [r for r in result if r["running_status"] == running_status]
    if breakdown_status:
        result = [r for r in result if r["breakdown_status"] == breakdown_status]
    if work:
        result = [r for r in result if r["work"] == work]
    if date_from:
        start = as_utc(date_from)
        result = [r for r in result if r["last_updated"] and r["last_updated"] >= start]
    if date_to:
        end = as_utc(date_to)
        result = [r for r in result if r["last_updated"] and r["last_updated"] <= end]
    return result


def summarize(rows: List[Dict[str, Any]]) -> Dict[str, int]:
    return {
        "total": len(rows),
        "auto": sum(1 for r in rows if r["running_status"] == AUTO),
        "manual": sum(1 for r in rows if r["running_status"] == MANUAL),
        "not_running": sum(1 for r in rows if r["running_status"] == NOT_RUNNING),
    }


def build_dashboard(db: Session, client: Client, now: Optional[datetime] = None, **filters) -> Dict[str, Any]:
    """Overall dashboard for one client: filtered rows with ageing plus status totals."""
    now = now or datetime.now(timezone.utc)
    rows = [robot_to_row(r, now) for r in list_robots(db, client)]
    filtered = filter_rows(rows, **filters)
    return {
        "client": client.name,
        "sites": sorted({r["site"] for r in rows}),
        "summary": summarize(filtered),
        "rows": filtered,
        "refresh_seconds": settings.dashboard_refresh_seconds,
        "generated_at": now,
    }
