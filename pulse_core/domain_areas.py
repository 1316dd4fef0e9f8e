"""
Domain areas of the consolidated snapshot.

Each area names the (source, endpoint) pairs that feed it, a pure merge
function over their payloads and the fields a complete result carries.
Merge functions receive only successful payloads keyed ``source:endpoint``;
a missing key means that input failed or is disabled.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple

from .merge import (
    count_by, first_present, latest_by_date, max_value, prefer_by_priority,
    sort_by_date, sum_counts, sum_field, union_records,
)

Payloads = Mapping[str, Any]

TIMELINE_DAYS = 365


@dataclass(frozen=True)
class AreaSpec:
    key: str
    title: str
    inputs: Tuple[Tuple[str, str], ...]
    merge: Callable[[Payloads], Dict[str, Any]]
    expected_fields: Tuple[str, ...] = ()
    weight: float = 1.0

    @property
    def sources(self) -> FrozenSet[str]:
        return frozenset(source for source, _ in self.inputs)


def _timeline(records, date_field: str, **fields: str):
    return [
        {"date": r[date_field], **{out: r.get(src) for out, src in fields.items()}}
        for r in sort_by_date(records, date_field)
    ][-TIMELINE_DAYS:]


def merge_gaza_humanitarian(payloads: Payloads) -> Dict[str, Any]:
    summary = (payloads.get("tech4palestine:summary") or {}).get("gaza") or {}
    daily = payloads.get("tech4palestine:casualties_daily")
    press = payloads.get("tech4palestine:press_killed")
    latest = latest_by_date(daily, "report_date") or {}
    killed = summary.get("killed") or {}
    injured = summary.get("injured") or {}

    return {
        "killed_total": prefer_by_priority([
            (1, killed.get("total")),
            (2, first_present(latest.get("ext_killed_cum"), latest.get("killed_cum"))),
        ]),
        "injured_total": prefer_by_priority([
            (1, injured.get("total")),
            (2, first_present(latest.get("ext_injured_cum"), latest.get("injured_cum"))),
        ]),
        "children_killed": prefer_by_priority([(1, killed.get("children")), (2, latest.get("ext_killed_children_cum"))]),
        "women_killed": prefer_by_priority([(1, killed.get("women")), (2, latest.get("ext_killed_women_cum"))]),
        "press_killed": prefer_by_priority([(1, len(press) if press is not None else None), (2, killed.get("press"))]),
        "medical_killed": killed.get("medical"),
        "massacres": summary.get("massacres"),
        "last_report_date": max_value(latest.get("report_date"), summary.get("last_update")),
        "timeline": _timeline(daily, "report_date",
                              killed_cum="ext_killed_cum", injured_cum="ext_injured_cum"),
    }


def _destroyed(category: Optional[Mapping[str, Any]], *fields: str):
    category = category or {}
    return first_present(*(category.get(f) for f in fields))


def merge_gaza_infrastructure(payloads: Payloads) -> Dict[str, Any]:
    reports = payloads.get("tech4palestine:infrastructure")
    attacks = payloads.get("goodshepherd:healthcare_attacks")
    latest = latest_by_date(reports, "report_date") or {}

    return {
        "housing_destroyed": _destroyed(latest.get("residential"), "ext_destroyed", "destroyed"),
        "housing_damaged": _destroyed(latest.get("residential"), "ext_damaged", "damaged"),
        "schools_destroyed": _destroyed(latest.get("educational_buildings"), "ext_destroyed", "destroyed"),
        "schools_damaged": _destroyed(latest.get("educational_buildings"), "ext_damaged", "damaged"),
        "mosques_destroyed": _destroyed(latest.get("places_of_worship"), "ext_mosques_destroyed", "mosques_destroyed"),
        "churches_destroyed": _destroyed(latest.get("places_of_worship"), "ext_churches_destroyed", "churches_destroyed"),
        "healthcare_attacks_total": len(attacks) if attacks is not None else None,
        "healthcare_attacks_by_facility": count_by(attacks, "facility_type") if attacks is not None else None,
        "healthcare_casualties": sum_counts(*(a.get("casualties") for a in attacks)) if attacks is not None else None,
        "last_report_date": max_value(latest.get("report_date"),
                                      (latest_by_date(attacks, "date") or {}).get("date")),
    }


def merge_gaza_population(payloads: Payloads) -> Dict[str, Any]:
    population = payloads.get("un_ocha:population")
    datasets = payloads.get("un_ocha:displacement")
    schools = payloads.get("un_ocha:schools")

    by_governorate = None
    total = None
    if population is not None:
        by_governorate = {
            str(row["ADM1_EN"]): row.get("T_TL")
            for row in union_records(population, key=lambda r: r.get("ADM1_EN"))
            if row.get("ADM1_EN")
        }
        total = sum_field(population, "T_TL")

    recent_datasets = None
    if datasets is not None:
        ordered = sorted(datasets, key=lambda d: (d.get("metadata_modified") or "", d.get("name") or ""), reverse=True)
        recent_datasets = [
            {"name": d.get("name"), "title": d.get("title"), "modified": d.get("metadata_modified")}
            for d in ordered[:10]
        ]

    return {
        "population_by_governorate": by_governorate,
        "total_population": total,
        "displacement_datasets": recent_datasets,
        "schools_count": len(schools) if schools is not None else None,
    }


def merge_gaza_aid(payloads: Payloads) -> Dict[str, Any]:
    prices = payloads.get("wfp:food_prices")
    if prices is None:
        return {"commodities": None, "markets_count": None, "latest_price_date": None}

    latest_per_commodity: Dict[str, Mapping[str, Any]] = {}
    for commodity in sorted({str(r.get("commodity")) for r in prices if r.get("commodity")}):
        rows = [r for r in prices if str(r.get("commodity")) == commodity]
        latest = latest_by_date(rows, "date")
        if latest is not None:
            latest_per_commodity[commodity] = {
                "price": latest.get("price"),
                "usd_price": latest.get("usdprice"),
                "unit": latest.get("unit"),
                "currency": latest.get("currency"),
                "market": latest.get("market"),
                "date": latest.get("date"),
            }

    return {
        "commodities": latest_per_commodity,
        "markets_count": len({r.get("market") for r in prices if r.get("market")}),
        "latest_price_date": (latest_by_date(prices, "date") or {}).get("date"),
    }


def merge_westbank_casualties(payloads: Payloads) -> Dict[str, Any]:
    summary = (payloads.get("tech4palestine:summary") or {}).get("west_bank") or {}
    daily = payloads.get("tech4palestine:west_bank_daily")
    latest = latest_by_date(daily, "report_date") or {}
    killed = summary.get("killed") or {}
    injured = summary.get("injured") or {}

    return {
        "killed_total": prefer_by_priority([(1, killed.get("total")), (2, latest.get("killed_cum"))]),
        "injured_total": prefer_by_priority([(1, injured.get("total")), (2, latest.get("injured_cum"))]),
        "children_killed": prefer_by_priority([(1, killed.get("children")), (2, latest.get("killed_children_cum"))]),
        "settler_attacks": prefer_by_priority([(1, summary.get("settler_attacks")), (2, latest.get("settler_attacks_cum"))]),
        "last_report_date": max_value(latest.get("report_date"), summary.get("last_update")),
        "timeline": _timeline(daily, "report_date", killed_cum="killed_cum", injured_cum="injured_cum"),
    }


def merge_westbank_occupation(payloads: Payloads) -> Dict[str, Any]:
    demolitions = payloads.get("goodshepherd:home_demolitions")
    incidents = payloads.get("goodshepherd:westbank_incidents")

    result: Dict[str, Any] = {
        "demolitions_total": None,
        "structures_demolished": None,
        "people_affected": None,
        "demolitions_by_type": None,
        "incidents_total": None,
        "incidents_by_type": None,
    }
    if demolitions is not None:
        result.update(
            demolitions_total=len(demolitions),
            structures_demolished=sum_field(demolitions, "structures"),
            people_affected=sum_field(demolitions, "people_affected"),
            demolitions_by_type=count_by(demolitions, "type"),
        )
    if incidents is not None:
        result.update(
            incidents_total=len(incidents),
            incidents_by_type=count_by(incidents, "incident_type"),
            incident_casualties=sum_counts(*({"killed": i.get("killed"), "injured": i.get("injured")} for i in incidents)),
        )
    result["last_report_date"] = max_value(
        (latest_by_date(demolitions, "date") or {}).get("date"),
        (latest_by_date(incidents, "date") or {}).get("date"),
    )
    return result


def merge_westbank_prisoners(payloads: Payloads) -> Dict[str, Any]:
    children = payloads.get("goodshepherd:child_prisoners")
    political = payloads.get("goodshepherd:political_prisoners")
    return {
        "child_prisoners": len(children) if children is not None else None,
        "political_prisoners": len(political) if political is not None else None,
        "last_report_date": max_value(
            (latest_by_date(children, "date") or {}).get("date"),
            (latest_by_date(political, "date") or {}).get("date"),
        ),
    }


_INDICATORS = (
    ("gdp_usd", "world_bank:gdp"),
    ("unemployment_rate", "world_bank:unemployment"),
    ("inflation_rate", "world_bank:inflation"),
)


def merge_westbank_economic(payloads: Payloads) -> Dict[str, Any]:
    result: Dict[str, Any] = {"series": {}}
    latest_years = []
    for field, key in _INDICATORS:
        rows = payloads.get(key)
        observed = [r for r in rows or () if r.get("value") is not None]
        series = [{"year": r["date"], "value": r["value"]} for r in sort_by_date(observed, "date")]
        latest = series[-1] if series else None
        result[field] = latest["value"] if latest else None
        if latest:
            latest_years.append(latest["year"])
        if rows is not None:
            result["series"][field] = series
    result["latest_year"] = max_value(*latest_years)
    return result


AREAS: Tuple[AreaSpec, ...] = (
    AreaSpec(
        key="gaza.humanitarianCrisis",
        title="Gaza humanitarian crisis",
        inputs=(("tech4palestine", "summary"), ("tech4palestine", "casualties_daily"),
                ("tech4palestine", "press_killed")),
        merge=merge_gaza_humanitarian,
        expected_fields=("killed_total", "injured_total", "children_killed", "women_killed",
                         "press_killed", "last_report_date", "timeline"),
        weight=2.0,
    ),
    AreaSpec(
        key="gaza.infrastructure",
        title="Gaza infrastructure destruction",
        inputs=(("tech4palestine", "infrastructure"), ("goodshepherd", "healthcare_attacks")),
        merge=merge_gaza_infrastructure,
        expected_fields=("housing_destroyed", "schools_destroyed", "mosques_destroyed",
                         "healthcare_attacks_total", "last_report_date"),
    ),
    AreaSpec(
        key="gaza.populationImpact",
        title="Gaza population impact",
        inputs=(("un_ocha", "population"), ("un_ocha", "displacement"), ("un_ocha", "schools")),
        merge=merge_gaza_population,
        expected_fields=("population_by_governorate", "total_population", "displacement_datasets", "schools_count"),
    ),
    AreaSpec(
        key="gaza.aidSurvival",
        title="Gaza aid and survival",
        inputs=(("wfp", "food_prices"),),
        merge=merge_gaza_aid,
        expected_fields=("commodities", "markets_count", "latest_price_date"),
    ),
    AreaSpec(
        key="westbank.casualties",
        title="West Bank casualties",
        inputs=(("tech4palestine", "summary"), ("tech4palestine", "west_bank_daily")),
        merge=merge_westbank_casualties,
        expected_fields=("killed_total", "injured_total", "children_killed", "settler_attacks",
                         "last_report_date", "timeline"),
        weight=2.0,
    ),
    AreaSpec(
        key="westbank.occupationMetrics",
        title="West Bank occupation metrics",
        inputs=(("goodshepherd", "home_demolitions"), ("goodshepherd", "westbank_incidents")),
        merge=merge_westbank_occupation,
        expected_fields=("demolitions_total", "structures_demolished", "incidents_total", "last_report_date"),
    ),
    AreaSpec(
        key="westbank.prisoners",
        title="Prisoners and detention",
        inputs=(("goodshepherd", "child_prisoners"), ("goodshepherd", "political_prisoners")),
        merge=merge_westbank_prisoners,
        expected_fields=("child_prisoners", "political_prisoners"),
    ),
    AreaSpec(
        key="westbank.economic",
        title="Economic indicators",
        inputs=(("world_bank", "gdp"), ("world_bank", "unemployment"), ("world_bank", "inflation")),
        merge=merge_westbank_economic,
        expected_fields=("gdp_usd", "unemployment_rate", "inflation_rate", "latest_year"),
    ),
)
