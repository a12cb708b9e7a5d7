from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal

import httpx
from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.core.config import settings
from tripledger.core.currencies import normalize_currency
from tripledger.core.logging import get_logger, log_event, log_exception
from tripledger.modules.fx.models import FxRate

logger = get_logger(__name__)

CENT = Decimal("0.01")


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _stage_rate(
    session: Session,
    *,
    from_currency: str,
    to_currency: str,
    rate: Decimal,
    as_of_date: date | None = None,
    source: str | None = None,
) -> FxRate:
    fx = session.scalar(
        select(FxRate).where(
            FxRate.from_currency == from_currency,
            FxRate.to_currency == to_currency,
        )
    )
    if not fx:
        fx = FxRate(from_currency=from_currency, to_currency=to_currency)
    fx.rate = rate
    fx.as_of_date = as_of_date
    fx.source = source
    session.add(fx)
    session.flush()
    return fx


def upsert_fx_rate(
    session: Session,
    *,
    from_currency: str,
    to_currency: str,
    rate: Decimal,
    as_of_date: date | None = None,
    source: str | None = None,
) -> FxRate:
    from_cur = normalize_currency(from_currency)
    to_cur = normalize_currency(to_currency)
    if not from_cur or not to_cur:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Currencies must be supported ISO-4217 codes",
        )
    if from_cur == to_cur:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Currencies must differ"
        )
    if rate <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Rate must be positive"
        )
    fx = _stage_rate(
        session,
        from_currency=from_cur,
        to_currency=to_cur,
        rate=rate,
        as_of_date=as_of_date,
        source=source,
    )
    session.commit()
    session.refresh(fx)
    log_event(logger, "fx.rate.upserted", from_currency=from_cur, to_currency=to_cur)
    return fx


def list_fx_rates(session: Session) -> list[FxRate]:
    return list(
        session.scalars(select(FxRate).order_by(FxRate.from_currency, FxRate.to_currency))
    )


def get_rate(session: Session, *, from_currency: str, to_currency: str) -> Decimal | None:
    """Stored rate for a pair, its inverse, or (when enabled) a freshly fetched one."""
    from_cur = from_currency.strip().upper()
    to_cur = to_currency.strip().upper()
    if from_cur == to_cur:
        return Decimal("1")

    direct = session.scalar(
        select(FxRate).where(FxRate.from_currency == from_cur, FxRate.to_currency == to_cur)
    )
    if direct:
        return Decimal(direct.rate)
    inverse = session.scalar(
        select(FxRate).where(FxRate.from_currency == to_cur, FxRate.to_currency == from_cur)
    )
    if inverse and inverse.rate:
        return Decimal("1") / Decimal(inverse.rate)

    if not settings.fx_auto_fetch:
        return None
    try:
        rate, as_of = _fetch_frankfurter_rate(from_currency=from_cur, to_currency=to_cur)
    except (httpx.HTTPError, ValueError):
        log_exception(logger, "fx.fetch.failure", from_currency=from_cur, to_currency=to_cur)
        return None
    _stage_rate(
        session,
        from_currency=from_cur,
        to_currency=to_cur,
        rate=rate,
        as_of_date=as_of,
        source="frankfurter.app",
    )
    log_event(logger, "fx.fetch.success", from_currency=from_cur, to_currency=to_cur)
    return rate


def convert_amount(
    session: Session, *, amount: Decimal, from_currency: str, to_currency: str
) -> tuple[Decimal, Decimal]:
    """Return ``(converted_amount, rate)``; a missing rate is a validation error."""
    rate = get_rate(session, from_currency=from_currency, to_currency=to_currency)
    if rate is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"No exchange rate available for {from_currency} to {to_currency}",
        )
    return quantize_money(Decimal(amount) * rate), rate


def _fetch_frankfurter_rate(*, from_currency: str, to_currency: str) -> tuple[Decimal, date]:
    if len(from_currency) != 3 or len(to_currency) != 3:
        raise ValueError("Invalid currency code")

    resp = httpx.get(
        settings.fx_api_url,
        params={"from": from_currency, "to": to_currency},
        timeout=10,
        follow_redirects=True,
    )
    resp.raise_for_status()
    data = resp.json()

    raw_rate = (data.get("rates") or {}).get(to_currency)
    raw_date = data.get("date")
    if raw_rate is None or not raw_date:
        raise ValueError("Unexpected FX response shape")

    return Decimal(str(raw_rate)), date.fromisoformat(str(raw_date))
