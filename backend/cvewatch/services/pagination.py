from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession


async def count_rows(db: AsyncSession, query) -> int:
    count_query = select(func.count()).select_from(query.order_by(None).subquery())
    return (await db.execute(count_query)).scalar() or 0


async def paginate(db: AsyncSession, query, offset: int, limit: int) -> tuple[list, int]:
    """Execute a query with offset/limit paging, returning (items, total).

    The total is derived from the unpaged query, so it covers the full
    filtered set regardless of the page requested.
    """
    total = await count_rows(db, query)
    result = await db.execute(query.offset(offset).limit(limit))
    items = list(result.scalars().all())
    return items, total
