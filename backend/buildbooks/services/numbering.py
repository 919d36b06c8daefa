"""Human-facing document numbers: ``<PREFIX>-<YEAR>-<NNN>``."""
from __future__ import annotations

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from buildbooks.models.numbering import DocumentCounter


async def next_document_number(db: AsyncSession, model, prefix: str, year: int) -> str:
    """Return the next free number for *prefix* in *year*.

    The counter row is bumped with one UPDATE, which holds its row lock until
    the caller's transaction ends; a concurrent caller waits and then reads
    the next value.  The first number of a year seeds the counter from the
    numbers already stored in *model*.
    """
    bumped = await db.execute(
        update(DocumentCounter)
        .where(DocumentCounter.prefix == prefix, DocumentCounter.year == year)
        .values(last_value=DocumentCounter.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    if bumped.rowcount:
        result = await db.execute(
            select(DocumentCounter.last_value).where(
                DocumentCounter.prefix == prefix, DocumentCounter.year == year
            )
        )
        value = result.scalar_one()
    else:
        value = await _highest_stored(db, model, prefix, year) + 1
        await db.execute(
            insert(DocumentCounter).values(prefix=prefix, year=year, last_value=value)
        )
    return f"{prefix}-{year}-{value:03d}"


async def _highest_stored(db: AsyncSession, model, prefix: str, year: int) -> int:
    stem = f"{prefix}-{year}-"
    result = await db.execute(select(model.number).where(model.number.like(f"{stem}%")))
    last = 0
    for number in result.scalars().all():
        suffix = number[len(stem):]
        if suffix.isdigit():
            last = max(last, int(suffix))
    return last
