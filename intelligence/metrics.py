"""
Ad performance metric formulas and Graph insights parsing.

Every ratio is 0 when its denominator is 0.
"""

from collections import OrderedDict
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

CONVERSION_ACTIONS = ("purchase", "omni_purchase")
LEAD_ACTION = "lead"
TREND_THRESHOLD = 10.0


def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    if not denominator:
        return 0.0
    return numerator / denominator * scale


def cpm(spend: float, impressions: int) -> float:
    return _ratio(spend, impressions, 1000)


def ctr(clicks: int, impressions: int) -> float:
    return _ratio(clicks, impressions, 100)


def cpc(spend: float, clicks: int) -> float:
    return _ratio(spend, clicks)


def cpa(spend: float, results: int) -> float:
    return _ratio(spend, results)


def roas(revenue: float, spend: float) -> float:
    """Return on ad spend as a percentage (150 = 1.5x)."""
    return _ratio(revenue, spend, 100)


def frequency(impressions: int, reach: int) -> float:
    return _ratio(impressions, reach)


def calculate_all(spend: float, impressions: int, clicks: int, reach: int, results: int, revenue: float) -> Dict[str, float]:
    return {
        "cpm": cpm(spend, impressions),
        "ctr": ctr(clicks, impressions),
        "cpc": cpc(spend, clicks),
        "cpa": cpa(spend, results),
        "roas": roas(revenue, spend),
        "frequency": frequency(impressions, reach),
    }


def to_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def to_int(value: Any) -> int:
    return int(to_float(value))


def _find_action(entries: Optional[List[Dict[str, Any]]], action_types: Iterable[str]) -> Optional[Dict[str, Any]]:
    for entry in entries or []:
        if entry.get("action_type") in action_types:
            return entry
    return None


def parse_insights(row: Dict[str, Any]) -> Dict[str, Any]:
    """
    Turn one Graph insights row into snapshot metrics.

    Conversions come from the purchase / omni_purchase action, falling back
    to leads. Revenue comes from the purchase action value.
    """
    spend = to_float(row.get("spend"))
    impressions = to_int(row.get("impressions"))
    clicks = to_int(row.get("clicks"))
    reach = to_int(row.get("reach"))

    conversions = 0
    purchase = _find_action(row.get("actions"), CONVERSION_ACTIONS)
    if purchase:
        conversions = to_int(purchase.get("value"))
    if conversions == 0:
        lead = _find_action(row.get("actions"), (LEAD_ACTION,))
        if lead:
            conversions = to_int(lead.get("value"))

    revenue = 0.0
    purchase_value = _find_action(row.get("action_values"), CONVERSION_ACTIONS)
    if purchase_value:
        revenue = to_float(purchase_value.get("value"))

    return {
        "spend": spend,
        "impressions": impressions,
        "clicks": clicks,
        "reach": reach,
        "conversions": conversions,
        "revenue": revenue,
        **calculate_all(spend, impressions, clicks, reach, conversions, revenue),
    }


def days_since(value: Optional[str], now: Optional[datetime] = None) -> Optional[int]:
    """Whole days since an ISO timestamp such as Graph's ``created_time``."""
    if not value:
        return None
    try:
        created = datetime.fromisoformat(value.replace("Z", "+00:00").replace("+0000", "+00:00"))
    except ValueError:
        return None
    created = created.replace(tzinfo=None)
    now = now or datetime.utcnow()
    return max(0, (now - created).days)


def performance_trend(snapshots: Iterable[Any]) -> Dict[str, Any]:
    """
    Compare the first and last day of a snapshot series.

    ROAS moving by more than 10 points either way is ``improving`` /
    ``declining``; anything else is ``stable``.
    """
    snapshots = list(snapshots)
    if len(snapshots) < 2:
        return {"trend": "insufficient_data", "data": []}

    daily: "OrderedDict[str, Dict[str, float]]" = OrderedDict()
    for snapshot in sorted(snapshots, key=lambda s: s.snapshot_date):
        key = snapshot.snapshot_date.isoformat() if isinstance(snapshot.snapshot_date, date) else str(snapshot.snapshot_date)
        day = daily.setdefault(key, {"spend": 0.0, "conversions": 0, "revenue": 0.0, "impressions": 0, "count": 0})
        day["spend"] += snapshot.spend or 0
        day["conversions"] += snapshot.conversions or 0
        day["revenue"] += snapshot.revenue or 0
        day["impressions"] += snapshot.impressions or 0
        day["count"] += 1

    days = list(daily.values())
    first, last = days[0], days[-1]

    spend_change = _ratio(last["spend"] - first["spend"], first["spend"], 100)
    roas_change = roas(last["revenue"], last["spend"]) - roas(first["revenue"], first["spend"])

    trend = "stable"
    if roas_change > TREND_THRESHOLD:
        trend = "improving"
    elif roas_change < -TREND_THRESHOLD:
        trend = "declining"

    return {
        "trend": trend,
        "spend_change": round(spend_change, 2),
        "roas_change": round(roas_change, 2),
        "data": [
            {"date": day_key, **values, "roas": round(roas(values["revenue"], values["spend"]), 2)}
            for day_key, values in daily.items()
        ],
    }
