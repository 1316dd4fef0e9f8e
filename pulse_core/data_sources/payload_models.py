"""
Pydantic shapes of the upstream JSON payloads.

Only the fields the merge step reads are declared; everything else is kept
(``extra="allow"``) so payloads survive upstream additions.
"""
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="allow")


# Tech for Palestine

class KilledBreakdown(_Lenient):
    total: Optional[int] = None
    children: Optional[int] = None
    women: Optional[int] = None
    civil_defence: Optional[int] = None
    press: Optional[int] = None
    medical: Optional[int] = None


class InjuredBreakdown(_Lenient):
    total: Optional[int] = None
    children: Optional[int] = None


class GazaSummary(_Lenient):
    reports: Optional[int] = None
    last_update: Optional[str] = None
    massacres: Optional[int] = None
    killed: KilledBreakdown = Field(default_factory=KilledBreakdown)
    injured: InjuredBreakdown = Field(default_factory=InjuredBreakdown)


class WestBankSummary(_Lenient):
    reports: Optional[int] = None
    last_update: Optional[str] = None
    settler_attacks: Optional[int] = None
    killed: KilledBreakdown = Field(default_factory=KilledBreakdown)
    injured: InjuredBreakdown = Field(default_factory=InjuredBreakdown)


class CasualtySummary(_Lenient):
    gaza: GazaSummary
    west_bank: Optional[WestBankSummary] = None


class DailyCasualtyReport(_Lenient):
    report_date: str
    killed: Optional[int] = None
    killed_cum: Optional[int] = None
    injured_cum: Optional[int] = None
    ext_killed_cum: Optional[int] = None
    ext_injured_cum: Optional[int] = None
    ext_killed_children_cum: Optional[int] = None
    ext_killed_women_cum: Optional[int] = None


class WestBankDailyReport(_Lenient):
    report_date: str
    verified: Optional[Dict[str, Any]] = None
    killed_cum: Optional[int] = None
    injured_cum: Optional[int] = None
    killed_children_cum: Optional[int] = None
    settler_attacks_cum: Optional[int] = None


class PressCasualty(_Lenient):
    name: str
    name_en: Optional[str] = None
    notes: Optional[str] = None


class InfrastructureReport(_Lenient):
    report_date: str
    residential: Optional[Dict[str, Any]] = None
    educational_buildings: Optional[Dict[str, Any]] = None
    places_of_worship: Optional[Dict[str, Any]] = None


# Good Shepherd Collective

class HealthcareAttack(_Lenient):
    date: Optional[str] = None
    facility_name: Optional[str] = None
    facility_type: Optional[str] = None
    location: Optional[str] = None
    incident_type: Optional[str] = None
    casualties: Optional[Dict[str, Optional[int]]] = None


class HomeDemolition(_Lenient):
    date: Optional[str] = None
    region: Optional[str] = None
    type: Optional[str] = None
    structures: Optional[int] = None
    people_affected: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("people_affected", "affectedPeople"),
    )


class WestBankIncident(_Lenient):
    date: Optional[str] = None
    incident_type: Optional[str] = None
    location: Optional[str] = None
    killed: Optional[int] = None
    injured: Optional[int] = None


class PrisonerRecord(_Lenient):
    date: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("date", "detention_date"),
    )
    name: Optional[str] = None
    age: Optional[int] = None


# World Bank

class IndicatorRef(_Lenient):
    id: str
    value: Optional[str] = None


class IndicatorObservation(_Lenient):
    indicator: IndicatorRef
    date: str
    value: Optional[float] = None


# Humanitarian Data Exchange (CKAN)

class HDXDataset(_Lenient):
    name: str
    title: Optional[str] = None
    metadata_modified: Optional[str] = None
    num_resources: Optional[int] = None


def records_list(document: Any) -> List[Any]:
    """Accept either a bare list or a ``{"data": [...]}`` wrapper."""
    if isinstance(document, list):
        return document
    if isinstance(document, dict) and isinstance(document.get("data"), list):
        return document["data"]
    raise ValueError("expected a list of records")


def world_bank_rows(document: Any) -> List[Any]:
    """World Bank v2 responses are ``[paging_meta, rows]``."""
    if not isinstance(document, list) or len(document) < 2 or document[1] is None:
        raise ValueError("expected [meta, rows] with at least one row")
    return document[1]


def ckan_results(document: Any) -> List[Any]:
    if not document.get("success", False):
        raise ValueError("CKAN action reported failure")
    return document["result"]["results"]
