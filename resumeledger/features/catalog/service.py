"""
Plan, add-on, and coupon catalog.

The catalog is the single pricing authority. It is loaded once (built-in
defaults or a JSON file at CATALOG_PATH), frozen, and never merged with
client input.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from resumeledger.core.config import settings

logger = logging.getLogger(__name__)

UNLIMITED = -1
ADDON_ONLY_PLAN_ID = "addon_only_purchase"
TEN_YEARS_HOURS = 24 * 365 * 10


class ResourceKind(str, Enum):
    OPTIMIZATION = "optimization"
    SCORE_CHECK = "score_check"
    LINKEDIN_MESSAGE = "linkedin_message"
    GUIDED_BUILD = "guided_build"

    @property
    def column_prefix(self) -> str:
        return _COLUMN_PREFIXES[self]

    @classmethod
    def parse(cls, value: str) -> "ResourceKind":
        normalized = (value or "").strip().lower()
        for kind in cls:
            if normalized in (kind.value, kind.column_prefix):
                return kind
        raise ValueError(f"Unknown resource kind: {value}")


_COLUMN_PREFIXES = {
    ResourceKind.OPTIMIZATION: "optimizations",
    ResourceKind.SCORE_CHECK: "score_checks",
    ResourceKind.LINKEDIN_MESSAGE: "linkedin_messages",
    ResourceKind.GUIDED_BUILD: "guided_builds",
}


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price: int  # minor units
    duration: str
    duration_hours: int
    quantities: Mapping[ResourceKind, int]

    def quantity(self, kind: ResourceKind) -> int:
        return self.quantities.get(kind, 0)


@dataclass(frozen=True)
class AddOn:
    id: str
    name: str
    price: int
    resource_kind: ResourceKind
    quantity: int  # units granted per purchased unit


@dataclass(frozen=True)
class Coupon:
    code: str
    plan_ids: Tuple[str, ...]
    kind: str  # "free" | "percent"
    percent_off: int = 0
    global_limit: Optional[int] = None

    def applies_to(self, plan_id: Optional[str]) -> bool:
        return plan_id is not None and plan_id in self.plan_ids

    def discount_for(self, price: int) -> int:
        if self.kind == "free":
            return price
        return (price * self.percent_off) // 100


@dataclass(frozen=True)
class Catalog:
    version: str
    plans: Mapping[str, Plan] = field(default_factory=dict)
    addons: Mapping[str, AddOn] = field(default_factory=dict)
    coupons: Mapping[str, Coupon] = field(default_factory=dict)

    def get_plan(self, plan_id: Optional[str]) -> Optional[Plan]:
        if not plan_id:
            return None
        return self.plans.get(plan_id)

    def get_addon(self, addon_id: str) -> Optional[AddOn]:
        return self.addons.get(addon_id)

    def get_coupon(self, code: Optional[str]) -> Optional[Coupon]:
        normalized = normalize_coupon_code(code)
        if not normalized:
            return None
        return self.coupons.get(normalized)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "plans": [
                {
                    "id": p.id,
                    "name": p.name,
                    "price": p.price,
                    "duration": p.duration,
                    "duration_hours": p.duration_hours,
                    "quantities": {k.value: v for k, v in p.quantities.items()},
                }
                for p in self.plans.values()
            ],
            "addons": [
                {
                    "id": a.id,
                    "name": a.name,
                    "price": a.price,
                    "resource_kind": a.resource_kind.value,
                    "quantity": a.quantity,
                }
                for a in self.addons.values()
            ],
        }


def normalize_coupon_code(code: Optional[str]) -> Optional[str]:
    if code is None:
        return None
    normalized = code.strip().lower()
    return normalized or None


def is_addon_only(plan_id: Optional[str]) -> bool:
    return not plan_id or plan_id == ADDON_ONLY_PLAN_ID


def _quantities(optimizations: int, score_checks: int, linkedin_messages: int, guided_builds: int) -> Mapping[ResourceKind, int]:
    return MappingProxyType({
        ResourceKind.OPTIMIZATION: optimizations,
        ResourceKind.SCORE_CHECK: score_checks,
        ResourceKind.LINKEDIN_MESSAGE: linkedin_messages,
        ResourceKind.GUIDED_BUILD: guided_builds,
    })


DEFAULT_CATALOG_DATA: Dict[str, Any] = {
    "version": "2024-builtin",
    "plans": [
        {"id": "career_pro_max", "name": "Career Pro Max", "price": 199900, "duration": "One-time Purchase",
         "duration_hours": TEN_YEARS_HOURS,
         "quantities": {"optimization": 50, "score_check": 50, "linkedin_message": UNLIMITED, "guided_build": 5}},
        {"id": "career_boost_plus", "name": "Career Boost+", "price": 149900, "duration": "One-time Purchase",
         "duration_hours": TEN_YEARS_HOURS,
         "quantities": {"optimization": 30, "score_check": 30, "linkedin_message": UNLIMITED, "guided_build": 3}},
        {"id": "pro_resume_kit", "name": "Pro Resume Kit", "price": 99900, "duration": "One-time Purchase",
         "duration_hours": TEN_YEARS_HOURS,
         "quantities": {"optimization": 20, "score_check": 20, "linkedin_message": 100, "guided_build": 2}},
        {"id": "smart_apply_pack", "name": "Smart Apply Pack", "price": 49900, "duration": "One-time Purchase",
         "duration_hours": TEN_YEARS_HOURS,
         "quantities": {"optimization": 10, "score_check": 10, "linkedin_message": 50, "guided_build": 1}},
        {"id": "resume_fix_pack", "name": "Resume Fix Pack", "price": 19900, "duration": "One-time Purchase",
         "duration_hours": TEN_YEARS_HOURS,
         "quantities": {"optimization": 5, "score_check": 2, "linkedin_message": 0, "guided_build": 0}},
        {"id": "lite_check", "name": "Lite Check", "price": 9900, "duration": "One-time Purchase",
         "duration_hours": TEN_YEARS_HOURS,
         "quantities": {"optimization": 2, "score_check": 2, "linkedin_message": 10, "guided_build": 0}},
    ],
    "addons": [
        {"id": "jd_optimization_single", "name": "JD-Based Optimization (1x)", "price": 4900,
         "resource_kind": "optimization", "quantity": 1},
        {"id": "guided_resume_build_single", "name": "Guided Resume Build (1x)", "price": 9900,
         "resource_kind": "guided_build", "quantity": 1},
        {"id": "resume_score_check_single", "name": "Resume Score Check (1x)", "price": 1900,
         "resource_kind": "score_check", "quantity": 1},
        {"id": "linkedin_messages_50", "name": "LinkedIn Messages (50x)", "price": 2900,
         "resource_kind": "linkedin_message", "quantity": 50},
    ],
    "coupons": [
        {"code": "first100", "plan_ids": ["lite_check"], "kind": "free", "global_limit": 100},
        {"code": "fullsupport", "plan_ids": ["career_pro_max"], "kind": "free"},
        {"code": "worthyone", "plan_ids": ["career_pro_max"], "kind": "percent", "percent_off": 50},
    ],
}


def build_catalog(data: Mapping[str, Any]) -> Catalog:
    """Validate raw catalog data and freeze it.

    Raises:
        ValueError: On negative prices, unknown resource kinds, duplicate ids,
            or coupons that reference unknown plans.
    """
    plans: Dict[str, Plan] = {}
    for raw in data.get("plans", []):
        price = int(raw["price"])
        if price < 0:
            raise ValueError(f"Plan {raw['id']} has a negative price")
        if raw["id"] in plans or raw["id"] == ADDON_ONLY_PLAN_ID:
            raise ValueError(f"Duplicate or reserved plan id: {raw['id']}")
        quantities = {ResourceKind.parse(k): int(v) for k, v in raw.get("quantities", {}).items()}
        for kind, qty in quantities.items():
            if qty < 0 and qty != UNLIMITED:
                raise ValueError(f"Plan {raw['id']} has an invalid {kind.value} quantity")
        plans[raw["id"]] = Plan(
            id=raw["id"],
            name=raw.get("name", raw["id"]),
            price=price,
            duration=raw.get("duration", ""),
            duration_hours=int(raw.get("duration_hours", TEN_YEARS_HOURS)),
            quantities=_quantities(
                quantities.get(ResourceKind.OPTIMIZATION, 0),
                quantities.get(ResourceKind.SCORE_CHECK, 0),
                quantities.get(ResourceKind.LINKEDIN_MESSAGE, 0),
                quantities.get(ResourceKind.GUIDED_BUILD, 0),
            ),
        )

    addons: Dict[str, AddOn] = {}
    for raw in data.get("addons", []):
        if raw["id"] in addons:
            raise ValueError(f"Duplicate add-on id: {raw['id']}")
        price = int(raw["price"])
        quantity = int(raw.get("quantity", 1))
        if price < 0 or quantity <= 0:
            raise ValueError(f"Add-on {raw['id']} has an invalid price or quantity")
        addons[raw["id"]] = AddOn(
            id=raw["id"],
            name=raw.get("name", raw["id"]),
            price=price,
            resource_kind=ResourceKind.parse(raw["resource_kind"]),
            quantity=quantity,
        )

    coupons: Dict[str, Coupon] = {}
    for raw in data.get("coupons", []):
        code = normalize_coupon_code(raw["code"])
        kind = raw.get("kind", "percent")
        if kind not in ("free", "percent"):
            raise ValueError(f"Coupon {code} has unknown kind {kind}")
        percent_off = int(raw.get("percent_off", 0))
        if kind == "percent" and not 0 < percent_off <= 100:
            raise ValueError(f"Coupon {code} percent_off must be within 1..100")
        plan_ids = tuple(raw.get("plan_ids", []))
        unknown = [pid for pid in plan_ids if pid not in plans]
        if unknown:
            raise ValueError(f"Coupon {code} references unknown plans: {', '.join(unknown)}")
        limit = raw.get("global_limit")
        coupons[code] = Coupon(
            code=code,
            plan_ids=plan_ids,
            kind=kind,
            percent_off=percent_off,
            global_limit=int(limit) if limit is not None else None,
        )

    return Catalog(
        version=str(data.get("version", "unversioned")),
        plans=MappingProxyType(plans),
        addons=MappingProxyType(addons),
        coupons=MappingProxyType(coupons),
    )


def load_catalog(path: Optional[str] = None) -> Catalog:
    """Load the catalog from a JSON file, or the built-in defaults when no path is given."""
    if not path:
        return build_catalog(DEFAULT_CATALOG_DATA)
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    catalog = build_catalog(data)
    logger.info("catalog.loaded", extra={"event_type": "catalog.loaded", "path": path})
    return catalog


@lru_cache(maxsize=1)
def get_catalog() -> Catalog:
    return load_catalog(settings.CATALOG_PATH)


def reload_catalog() -> Catalog:
    get_catalog.cache_clear()
    return get_catalog()
