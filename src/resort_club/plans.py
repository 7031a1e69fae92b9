"""Membership plan catalog."""

from __future__ import annotations

from dataclasses import dataclass, field

from .config import FREE_PLAN_CODE, NO_EXPIRY_DAYS

ACCESS_AMENITIES = (
    "Gym access",
    "Pool access",
    "Beach chairs & towels",
    "Showers",
    "Lockers",
    "Lounge access",
)


@dataclass(frozen=True)
class Plan:
    code: str
    name: str
    price_cents: int
    duration_days: int
    grants_access: bool
    discount_food: float = 0.0
    discount_watersports: float = 0.0
    discount_giftshop: float = 0.0
    discount_spa: float = 0.0
    is_active: bool = True
    id: int | None = None

    @property
    def is_free(self) -> bool:
        return self.code == FREE_PLAN_CODE

    @property
    def no_expiry(self) -> bool:
        return self.duration_days >= NO_EXPIRY_DAYS

    @classmethod
    def from_row(cls, row: dict, prefix: str = "") -> "Plan":
        def col(name, default=None):
            return row.get(prefix + name, default)

        return cls(
            id=col("id"),
            code=str(col("code") or FREE_PLAN_CODE).lower(),
            name=col("name") or "",
            price_cents=int(col("price_cents") or 0),
            duration_days=int(col("duration_days") or 0),
            grants_access=bool(col("grants_access")),
            discount_food=float(col("discount_food") or 0),
            discount_watersports=float(col("discount_watersports") or 0),
            discount_giftshop=float(col("discount_giftshop") or 0),
            discount_spa=float(col("discount_spa") or 0),
            is_active=bool(col("is_active", 1)),
        )


DEFAULT_PLANS = (
    Plan(FREE_PLAN_CODE, "Travellers Rewards", 0, NO_EXPIRY_DAYS, False, 0.05, 0.05, 0.05, 0.05),
    Plan("club_day", "Travellers Club Day Pass", 2500, 1, True, 0.10, 0.10, 0.10, 0.10),
    Plan("club_weekly", "Travellers Club Weekly Pass", 4500, 7, True, 0.15, 0.10, 0.10, 0.10),
    Plan("club_monthly_95", "Travellers Club Monthly", 9500, 30, True, 0.20, 0.15, 0.15, 0.15),
)


def seed_plans(db, cur) -> None:
    for plan in DEFAULT_PLANS:
        cur.execute(
            db.sql(
                """
                INSERT INTO membership_plans(
                    code, name, price_cents, duration_days, grants_access,
                    discount_food, discount_watersports, discount_giftshop, discount_spa, is_active
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(code) DO NOTHING
                """
            ),
            (
                plan.code,
                plan.name,
                plan.price_cents,
                plan.duration_days,
                1 if plan.grants_access else 0,
                plan.discount_food,
                plan.discount_watersports,
                plan.discount_giftshop,
                plan.discount_spa,
            ),
        )


def get_plan(db, code: str, *, active_only: bool = False) -> Plan | None:
    query = "SELECT * FROM membership_plans WHERE code = ?"
    if active_only:
        query += " AND is_active = 1"
    row = db.fetch_one(query, ((code or "").strip().lower(),))
    return Plan.from_row(row) if row else None


def list_plans(db) -> list[Plan]:
    rows = db.fetch_all("SELECT * FROM membership_plans WHERE is_active = 1 ORDER BY price_cents, id")
    return [Plan.from_row(r) for r in rows]


@dataclass
class Benefits:
    discounts: dict[str, int] = field(default_factory=dict)
    amenities: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"discounts": self.discounts, "amenities": self.amenities, "notes": self.notes}


def _pct(value: float) -> int:
    return int(round((value or 0) * 100))


def benefits_for(plan: Plan, access_granted: bool) -> Benefits:
    """Discounts always follow the plan; amenities only while access is live."""
    benefits = Benefits(
        discounts={
            "food": _pct(plan.discount_food),
            "watersports": _pct(plan.discount_watersports),
            "giftshop": _pct(plan.discount_giftshop),
            "spa": _pct(plan.discount_spa),
        }
    )
    if access_granted:
        benefits.amenities = list(ACCESS_AMENITIES)
    elif plan.is_free or not plan.grants_access:
        benefits.notes.append("No facility access (gym, pool, towels, lockers, showers).")
    else:
        benefits.notes.append("Facility access paused until the membership is renewed.")
    return benefits
