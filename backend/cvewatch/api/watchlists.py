from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update

from cvewatch.database import get_db
from cvewatch.exceptions import UnknownDatePresetError
from cvewatch.models.alert import Alert
from cvewatch.models.watchlist import Watchlist
from cvewatch.schemas.query import QueryModel
from cvewatch.schemas.watchlist import WatchlistCreate, WatchlistResponse, WatchlistUpdate
from cvewatch.services.date_presets import DatePresetRegistry
from cvewatch.api.deps import get_presets

import structlog

logger = structlog.get_logger()

router = APIRouter()


def _to_response(watchlist: Watchlist) -> WatchlistResponse:
    response = WatchlistResponse.model_validate(watchlist)
    try:
        response.chips = QueryModel.model_validate(watchlist.query or {}).chips()
    except ValidationError:
        response.chips = []
    return response


def _check_presets(presets: DatePresetRegistry, query: QueryModel):
    try:
        presets.validate(query)
    except UnknownDatePresetError as e:
        raise HTTPException(status_code=400, detail=str(e))


async def _get_or_404(db: AsyncSession, watchlist_id: str) -> Watchlist:
    result = await db.execute(select(Watchlist).where(Watchlist.id == watchlist_id))
    watchlist = result.scalar_one_or_none()
    if not watchlist:
        raise HTTPException(status_code=404, detail="Watchlist not found")
    return watchlist


@router.get("", response_model=list[WatchlistResponse])
async def list_watchlists(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Watchlist).order_by(Watchlist.created_at.desc(), Watchlist.name))
    return [_to_response(w) for w in result.scalars().all()]


@router.post("", response_model=WatchlistResponse, status_code=201)
async def create_watchlist(
    watchlist_in: WatchlistCreate,
    db: AsyncSession = Depends(get_db),
    presets: DatePresetRegistry = Depends(get_presets),
):
    _check_presets(presets, watchlist_in.query)
    watchlist = Watchlist(
        name=watchlist_in.name,
        query=watchlist_in.query.to_storage(),
        enabled=watchlist_in.enabled,
    )
    db.add(watchlist)
    await db.flush()
    await db.refresh(watchlist)
    logger.info("Watchlist created", watchlist_id=watchlist.id, name=watchlist.name)
    return _to_response(watchlist)


@router.get("/{watchlist_id}", response_model=WatchlistResponse)
async def get_watchlist(watchlist_id: str, db: AsyncSession = Depends(get_db)):
    return _to_response(await _get_or_404(db, watchlist_id))


@router.put("/{watchlist_id}", response_model=WatchlistResponse)
async def update_watchlist(
    watchlist_id: str,
    watchlist_in: WatchlistUpdate,
    db: AsyncSession = Depends(get_db),
    presets: DatePresetRegistry = Depends(get_presets),
):
    watchlist = await _get_or_404(db, watchlist_id)

    update_data = watchlist_in.model_dump(exclude_unset=True, exclude={"query"})
    if watchlist_in.query is not None:
        _check_presets(presets, watchlist_in.query)
        watchlist.query = watchlist_in.query.to_storage()
    for field, value in update_data.items():
        if value is not None:
            setattr(watchlist, field, value)

    # Alerts carry the name for display; keep them in step with a rename.
    if "name" in update_data and update_data["name"]:
        await db.execute(
            update(Alert).where(Alert.watchlist_id == watchlist_id).values(watchlist_name=update_data["name"])
        )
    await db.flush()
    await db.refresh(watchlist)
    return _to_response(watchlist)


@router.delete("/{watchlist_id}", status_code=204)
async def delete_watchlist(watchlist_id: str, db: AsyncSession = Depends(get_db)):
    watchlist = await _get_or_404(db, watchlist_id)
    await db.delete(watchlist)
    logger.info("Watchlist deleted", watchlist_id=watchlist_id)
