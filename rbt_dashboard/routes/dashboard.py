from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy.orm import Session

from ..db import get_db
from ..schemas.rbts import DashboardResponse
from ..auth.security import require_capability
from ..services.access import Action
from ..services.csv_io import export_dashboard_csv
from ..services.dashboard import build_dashboard
from .clients import load_client


router = APIRouter(prefix="/clients", tags=["dashboard"])


def _filters(
    site: Optional[str] = None,
    running_status: Optional[str] = None,
    breakdown_status: Optional[str] = None,
    work: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> dict:
    return {
        "site": site,
        "running_status": running_status,
        "breakdown_status": breakdown_status,
        "work": work,
        "date_from": date_from,
        "date_to": date_to,
    }


@router.get("/{client_name}/dashboard", response_model=DashboardResponse)
def client_dashboard(
    client_name: str,
    filters: dict = Depends(_filters),
    db: Session = Depends(get_db),
    _=Depends(require_capability(Action.read)),
):
    client = load_client(db, client_name)
    return build_dashboard(db, client, **filters)


@router.get("/{client_name}/dashboard/export")
def export_client_dashboard(
    client_name: str,
    filters: dict = Depends(_filters),
    db: Session = Depends(get_db),
    _=Depends(require_capability(Action.read)),
):
    client = load_client(db, client_name)
    data = build_dashboard(db, client, **filters)
    stamp = data["generated_at"].strftime("%Y%m%d")
    return Response(
        content=export_dashboard_csv(data["rows"]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{client.name}_dashboard_{stamp}.csv"'},
    )
