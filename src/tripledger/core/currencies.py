from __future__ import annotations

# Currencies accepted on expenses and travel estimates.
SUPPORTED_CURRENCIES: frozenset[str] = frozenset(
    {
        "USD", "EUR", "ILS", "PLN", "GBP", "BGN", "CZK", "HUF", "RON", "SEK",
        "NOK", "DKK", "CHF", "JPY", "CNY", "ISK", "HRK", "RSD", "UAH", "TRY",
        "CAD", "MXN", "BRL", "ARS", "CLP", "COP", "PEN", "UYU", "KRW", "HKD",
        "SGD", "THB", "MYR", "IDR", "PHP", "VND", "TWD", "INR", "ZAR", "EGP",
        "MAD", "TND", "KES", "NGN", "GHS", "AUD", "NZD", "AED", "SAR", "QAR",
        "KWD", "JOD",
    }
)  # fmt: skip


def normalize_currency(value: str | None) -> str | None:
    code = (value or "").strip().upper()
    if code not in SUPPORTED_CURRENCIES:
        return None
    return code


def all_currency_codes() -> list[str]:
    return sorted(SUPPORTED_CURRENCIES)
