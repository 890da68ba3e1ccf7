from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..db import get_db
from ..logging import structlog
from ..models.models import Client, Site, Robot
from ..schemas.rbts import ClientCreate, ClientResponse, SiteCreate, SiteResponse
from ..auth.security import require_capability
from ..services.access import Action, Actor
from ..services.robots import find_client, find_site


router = APIRouter(prefix="/clients", tags=["clients"])
logger = structlog.get_logger(__name__)


def load_client(db: Session, client_name: str) -> Client:
    client = find_client(db, client_name)
    if not client:
        raise HTTPException(status_code=404, detail="Client not found")
    return client


def load_site(db: Session, client: Client, site_name: str) -> Site:
    site = find_site(db, client, site_name)
    if not site:
        raise HTTPException(status_code=404, detail="Site not found")
    return site


@router.get("", response_model=List[ClientResponse])
def list_clients(db: Session = Depends(get_db), _=Depends(require_capability(Action.read))):
    seen = set()
    out = []
    for c in db.query(Client).order_by(Client.name.asc()).all():
        key = c.name.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(c)
    return out


@router.post("", response_model=ClientResponse, status_code=201)
def create_client(
    payload: ClientCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability(Action.manage_sites)),
):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Client name is required")
    if find_client(db, name):
        raise HTTPException(status_code=409, detail="Client already exists")
    c = Client(name=name)
    db.add(c)
    db.commit()
    db.refresh(c)
    logger.info("client_created", client=name, created_by=actor.email)
    return c


@router.get("/{client_name}/sites", response_model=List[SiteResponse])
def list_sites(client_name: str, db: Session = Depends(get_db), _=Depends(require_capability(Action.read))):
    client = load_client(db, client_name)
    counts = dict(
        db.query(Robot.site_id, func.count(Robot.id))
        .join(Site, Robot.site_id == Site.id)
        .filter(Site.client_id == client.id)
        .group_by(Robot.site_id)
        .all()
    )
    sites = db.query(Site).filter(Site.client_id == client.id).order_by(Site.name.asc()).all()
    return [
        SiteResponse(id=s.id, name=s.name, client=client.name, rbt_count=counts.get(s.id, 0))
        for s in sites
    ]


@router.post("/{client_name}/sites", response_model=SiteResponse, status_code=201)
def create_site(
    client_name: str,
    payload: SiteCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability(Action.manage_sites)),
):
    client = load_client(db, client_name)
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Site name is required")
    if find_site(db, client, name):
        raise HTTPException(status_code=409, detail="Site already exists")
    s = Site(client_id=client.id, name=name)
    db.add(s)
    db.commit()
    db.refresh(s)
    logger.info("site_created", client=client.name, site=name, created_by=actor.email)
    return SiteResponse(id=s.id, name=s.name, client=client.name, rbt_count=0)
