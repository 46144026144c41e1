from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete

from cvewatch.database import get_db
from cvewatch.models.alert import Alert
from cvewatch.models.cve import Cve
from cvewatch.schemas.alert import AlertBulkResult, AlertResponse

router = APIRouter()


async def _get_or_404(db: AsyncSession, alert_id: str) -> Alert:
    result = await db.execute(select(Alert).where(Alert.id == alert_id))
    alert = result.scalar_one_or_none()
    if not alert:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert


async def _set_read(db: AsyncSession, alert_id: str, read: bool) -> AlertResponse:
    alert = await _get_or_404(db, alert_id)
    alert.read = read
    await db.flush()
    return AlertResponse.model_validate(alert)


@router.get("", response_model=list[AlertResponse])
async def list_alerts(
    unread: bool | None = Query(None, description="true: unread only, false: read only"),
    kev: bool | None = None,
    watchlist_id: str | None = None,
    limit: int = Query(500, ge=1, le=5000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    query = (
        select(Alert, Cve.kev, Cve.cvss_score, Cve.cvss_severity)
        .outerjoin(Cve, Cve.id == Alert.cve_id)
        .order_by(Alert.created_at.desc(), Alert.id)
    )
    if unread is not None:
        query = query.where(Alert.read == (not unread))
    if kev is not None:
        query = query.where(Cve.kev == kev)
    if watchlist_id:
        query = query.where(Alert.watchlist_id == watchlist_id)

    result = await db.execute(query.offset(offset).limit(limit))
    return [
        AlertResponse.model_validate(alert).model_copy(
            update={"kev": is_kev, "cvss_score": score, "cvss_severity": severity}
        )
        for alert, is_kev, score, severity in result.all()
    ]


@router.put("/mark-all-read", response_model=AlertBulkResult)
async def mark_all_read(db: AsyncSession = Depends(get_db)):
    result = await db.execute(update(Alert).where(Alert.read == False).values(read=True))
    return AlertBulkResult(affected=result.rowcount)


@router.put("/mark-all-unread", response_model=AlertBulkResult)
async def mark_all_unread(db: AsyncSession = Depends(get_db)):
    result = await db.execute(update(Alert).where(Alert.read == True).values(read=False))
    return AlertBulkResult(affected=result.rowcount)


@router.delete("/delete-all", response_model=AlertBulkResult)
async def delete_all_alerts(db: AsyncSession = Depends(get_db)):
    result = await db.execute(delete(Alert))
    return AlertBulkResult(affected=result.rowcount)


@router.put("/{alert_id}/read", response_model=AlertResponse)
async def mark_read(alert_id: str, db: AsyncSession = Depends(get_db)):
    return await _set_read(db, alert_id, True)


@router.put("/{alert_id}/unread", response_model=AlertResponse)
async def mark_unread(alert_id: str, db: AsyncSession = Depends(get_db)):
    return await _set_read(db, alert_id, False)


@router.delete("/{alert_id}", status_code=204)
async def delete_alert(alert_id: str, db: AsyncSession = Depends(get_db)):
    alert = await _get_or_404(db, alert_id)
    await db.delete(alert)
