from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping


@dataclass(frozen=True)
class DefaultCategory:
    color: str
    monthly_budget: Decimal


# Starter categories created for every new user.
DEFAULT_CATEGORIES: Mapping[str, DefaultCategory] = MappingProxyType(
    {
        "Food": DefaultCategory("#FF6B6B", Decimal("300")),
        "Transport": DefaultCategory("#4ECDC4", Decimal("150")),
        "Healthcare": DefaultCategory("#45B7D1", Decimal("100")),
        "Entertainment": DefaultCategory("#FFA07A", Decimal("100")),
        "Education": DefaultCategory("#98D8C8", Decimal("200")),
        "Housing": DefaultCategory("#6C5CE7", Decimal("500")),
        "Utilities": DefaultCategory("#FDCB6E", Decimal("150")),
        "Shopping": DefaultCategory("#E17055", Decimal("200")),
        "Miscellaneous": DefaultCategory("#A29BFE", Decimal("100")),
    }
)


def default_category_rows(
    user_id: int, defaults: Mapping[str, DefaultCategory] = DEFAULT_CATEGORIES
) -> list[dict]:
    return [
        {
            "user_id": user_id,
            "name": name,
            "color": default.color,
            "monthly_budget": default.monthly_budget,
        }
        for name, default in defaults.items()
    ]
