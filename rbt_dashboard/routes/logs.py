from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from ..db import get_db
from ..schemas.rbts import LogResponse
from ..auth.security import require_capability
from ..services.access import Action
from ..services.audit import get_logs
from ..services.csv_io import export_logs_csv


router = APIRouter(prefix="/logs", tags=["logs"])


@router.get("", response_model=List[LogResponse])
def list_logs(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    client: Optional[str] = None,
    limit: int = Query(1000, ge=1, le=10000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    _=Depends(require_capability(Action.view_logs)),
):
    return get_logs(db, start=start, end=end, client=client, limit=limit, offset=offset)


@router.get("/export")
def export_logs(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    client: Optional[str] = None,
    db: Session = Depends(get_db),
    _=Depends(require_capability(Action.view_logs)),
):
    logs = get_logs(db, start=start, end=end, client=client, limit=100000)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d")
    return Response(
        content=export_logs_csv(logs),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="rbt_logs_{stamp}.csv"'},
    )
