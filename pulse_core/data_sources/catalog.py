"""
Endpoint catalog: every (source, endpoint) pair the service knows how to fetch.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..exceptions import UnknownSourceError
from .decoders import CSVDecoder, JSONDecoder, SourceDecoder, XLSXDecoder
from .payload_models import (
    CasualtySummary, DailyCasualtyReport, HDXDataset, HealthcareAttack, HomeDemolition,
    IndicatorObservation, InfrastructureReport, PressCasualty, PrisonerRecord,
    WestBankDailyReport, WestBankIncident, ckan_results, records_list, world_bank_rows,
)

HDX_DOWNLOAD = "https://data.humdata.org/dataset"
WORLD_BANK_COUNTRY = "country/PSE/indicator"


@dataclass(frozen=True)
class EndpointSpec:
    source: str
    name: str
    path: str
    decoder: SourceDecoder
    params: Tuple[Tuple[str, str], ...] = ()
    description: str = ""

    @property
    def key(self) -> str:
        return f"{self.source}:{self.name}"

    def url(self, base_url: str) -> str:
        if self.path.startswith(("http://", "https://")):
            return self.path
        return f"{base_url.rstrip('/')}/{self.path.lstrip('/')}"


def _world_bank(name: str, indicator: str, description: str) -> EndpointSpec:
    return EndpointSpec(
        source="world_bank",
        name=name,
        path=f"{WORLD_BANK_COUNTRY}/{indicator}",
        decoder=JSONDecoder(List[IndicatorObservation], extract=world_bank_rows),
        params=(("format", "json"), ("per_page", "60")),
        description=description,
    )


_SPECS = [
    # Tech for Palestine
    EndpointSpec("tech4palestine", "summary", "/v3/summary.json",
                 JSONDecoder(CasualtySummary), description="Gaza and West Bank headline totals"),
    EndpointSpec("tech4palestine", "casualties_daily", "/v2/casualties_daily.json",
                 JSONDecoder(List[DailyCasualtyReport]), description="Gaza daily cumulative casualties"),
    EndpointSpec("tech4palestine", "west_bank_daily", "/v2/west_bank_daily.json",
                 JSONDecoder(List[WestBankDailyReport]), description="West Bank daily cumulative casualties"),
    EndpointSpec("tech4palestine", "press_killed", "/v2/press_killed_in_gaza.json",
                 JSONDecoder(List[PressCasualty]), description="Journalists killed in Gaza"),
    EndpointSpec("tech4palestine", "infrastructure", "/v3/infrastructure-damaged.json",
                 JSONDecoder(List[InfrastructureReport]), description="Damaged and destroyed infrastructure"),

    # Good Shepherd Collective
    EndpointSpec("goodshepherd", "healthcare_attacks", "healthcare_attacks.json",
                 JSONDecoder(List[HealthcareAttack], extract=records_list), description="Attacks on healthcare"),
    EndpointSpec("goodshepherd", "home_demolitions", "home_demolitions.json",
                 JSONDecoder(List[HomeDemolition], extract=records_list), description="Home demolitions"),
    EndpointSpec("goodshepherd", "westbank_incidents", "jerusalem_westbank_data.json",
                 JSONDecoder(List[WestBankIncident], extract=records_list), description="Jerusalem and West Bank incidents"),
    EndpointSpec("goodshepherd", "child_prisoners", "child_prisoners.json",
                 JSONDecoder(List[PrisonerRecord], extract=records_list), description="Child prisoners"),
    EndpointSpec("goodshepherd", "political_prisoners", "political_prisoners.json",
                 JSONDecoder(List[PrisonerRecord], extract=records_list), description="Political prisoners"),

    # UN OCHA via the Humanitarian Data Exchange
    EndpointSpec("un_ocha", "displacement", "/api/action/package_search",
                 JSONDecoder(List[HDXDataset], extract=ckan_results),
                 params=(("q", "gaza displacement"), ("rows", "20"), ("sort", "metadata_modified desc")),
                 description="Displacement datasets published on HDX"),
    EndpointSpec("un_ocha", "population",
                 f"{HDX_DOWNLOAD}/36271e9b-9ec2-4c1c-bfff-82848eba0b2f/resource/"
                 "f7e802cb-9701-4624-a348-13e52103e27f/download/pse_admpop_adm1_2023.csv",
                 CSVDecoder(required_columns=("ADM1_EN", "T_TL"), numeric_columns=("T_TL", "F_TL", "M_TL")),
                 description="Population by governorate (2023)"),
    EndpointSpec("un_ocha", "schools",
                 f"{HDX_DOWNLOAD}/f54aea1b-ad53-4cce-9051-788e164189d5/resource/"
                 "fb673d75-7100-4c53-b88b-7fe651c491bb/download/schools_opt_.xlsx",
                 XLSXDecoder(), description="Schools in the occupied Palestinian territory"),

    # World Food Programme via HDX
    EndpointSpec("wfp", "food_prices",
                 f"{HDX_DOWNLOAD}/7d06b059-5831-4101-aa68-6d9123ad65b7/resource/"
                 "b82509ec-d48e-41d7-b376-af51c7f66737/download/wfp_food_prices_pse.csv",
                 CSVDecoder(required_columns=("date", "market", "commodity", "price"),
                            numeric_columns=("price", "usdprice")),
                 description="Market food prices"),

    # World Bank
    _world_bank("gdp", "NY.GDP.MKTP.CD", "GDP (current US$)"),
    _world_bank("unemployment", "SL.UEM.TOTL.ZS", "Unemployment (% of labour force)"),
    _world_bank("inflation", "FP.CPI.TOTL.ZG", "Inflation, consumer prices (annual %)"),
]

ENDPOINTS: Dict[str, EndpointSpec] = {spec.key: spec for spec in _SPECS}


def get_endpoint(source_id: str, endpoint: str, catalog: Optional[Dict[str, EndpointSpec]] = None) -> EndpointSpec:
    catalog = ENDPOINTS if catalog is None else catalog
    try:
        return catalog[f"{source_id}:{endpoint}"]
    except KeyError:
        raise UnknownSourceError(f"Unknown endpoint: {source_id}:{endpoint}", source_id=source_id, endpoint=endpoint) from None
