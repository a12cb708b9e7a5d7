from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tripledger.api.deps import get_current_user, require_permission
from tripledger.core.currencies import all_currency_codes
from tripledger.core.db import db_session
from tripledger.modules.fx.schemas import ConversionOut, FxRateOut, FxRateUpsert
from tripledger.modules.fx.service import convert_amount, list_fx_rates, upsert_fx_rate
from tripledger.modules.identity.models import User

router = APIRouter(tags=["fx"])


@router.get("/currencies")
def list_currencies() -> list[str]:
    return all_currency_codes()


@router.get("/fx-rates", response_model=list[FxRateOut])
def list_fx_rates_endpoint(
    session: Session = Depends(db_session),
    _: User = Depends(get_current_user),
) -> list[FxRateOut]:
    return [FxRateOut.model_validate(r, from_attributes=True) for r in list_fx_rates(session)]


@router.post("/fx-rates", response_model=list[FxRateOut])
def set_fx_rates(
    payload: list[FxRateUpsert],
    session: Session = Depends(db_session),
    _: User = Depends(require_permission("can_manage_fx")),
) -> list[FxRateOut]:
    out: list[FxRateOut] = []
    for r in payload:
        fx = upsert_fx_rate(
            session,
            from_currency=r.from_currency,
            to_currency=r.to_currency,
            rate=r.rate,
            as_of_date=r.as_of_date,
            source=r.source,
        )
        out.append(FxRateOut.model_validate(fx, from_attributes=True))
    return out


@router.get("/fx-rates/convert", response_model=ConversionOut)
def convert_endpoint(
    amount: Decimal,
    from_currency: str,
    to_currency: str,
    session: Session = Depends(db_session),
    _: User = Depends(get_current_user),
) -> ConversionOut:
    converted, rate = convert_amount(
        session, amount=amount, from_currency=from_currency, to_currency=to_currency
    )
    # An auto-fetched rate is staged on the session.
    session.commit()
    return ConversionOut(
        amount=amount,
        from_currency=from_currency.upper(),
        to_currency=to_currency.upper(),
        rate=rate,
        converted_amount=converted,
    )
