"""Unit tests for cbs_client.py: CBS StatLine OData table clients.

Tests cover: region code fallback and padding, rate conversion, row
parsing per table, source caching (including empty rows) and cancellation.
"""

import threading
from unittest.mock import patch

import pytest

from cbs_client import (
    CbsCrimeClient,
    CbsDemographicsClient,
    CbsNeighborhoodClient,
    rate_per_1000,
    region_candidates,
)
from models import get_source_cache
from source_http import SourceCancelledError

from conftest import make_location


def _odata(row):
    return {"value": [row] if row else []}


NEIGHBORHOOD_ROW = {
    "WijkenEnBuurten": "BU03630000",
    "SoortRegio_2": "Buurt     ",
    "AantalInwoners_5": 1200,
    "Bevolkingsdichtheid_34": 18250,
    "GemiddeldeWOZWaardeVanWoningen_36": 512,
    "HuishoudensMetEenLaagInkomen_73": 7.4,
    "MateVanStedelijkheid_125": 1,
    "GemiddeldInkomenPerInwoner_81": 36.2,
    "BasisonderwijsVmboMbo1_70": 100,
    "HavoVwoMbo24_71": 200,
    "HboWo_72": 700,
    "Koopwoningen_41": 22,
    "HuurwoningenTotaal_42": 78,
    "InBezitWoningcorporatie_43": 41,
    "InBezitOverigeVerhuurders_44": 37,
    "BouwjaarVoor2000_46": 91,
    "BouwjaarVanaf2000_47": 9,
    "PercentageMeergezinswoning_38": 98,
    "PersonenautoSPerHuishouden_112": 0.2,
    "PersonenautoSNaarOppervlakte_113": 1320,
    "PersonenautoSTotaal_109": 150,
    "AfstandTotHuisartsenpraktijk_115": 0.3,
    "AfstandTotGroteSupermarkt_116": 0.4,
    "AfstandTotKinderdagverblijf_117": 0.3,
    "AfstandTotSchool_118": 0.5,
    "ScholenBinnen3Km_119": 38.1,
}


# =========================================================================
# Helpers
# =========================================================================

class TestRegionCandidates:
    def test_most_specific_first_and_padded(self):
        codes = list(region_candidates(make_location()))
        assert codes == ["BU03630000", "WK036300  ", "GM0363    "]

    def test_missing_codes_skipped(self):
        loc = make_location(neighborhood_code=None, district_code="  ")
        assert [c.strip() for c in region_candidates(loc)] == ["GM0363"]


class TestRatePer1000:
    def test_conversion(self):
        assert rate_per_1000(30, 1200) == 25

    def test_half_rounds_up(self):
        # 3 / 2000 * 1000 = 1.5
        assert rate_per_1000(3, 2000) == 2

    def test_without_residents_returns_count(self):
        assert rate_per_1000(12, None) == 12
        assert rate_per_1000(12, 0) == 12

    def test_none_count(self):
        assert rate_per_1000(None, 1000) is None


# =========================================================================
# Neighborhood table
# =========================================================================

class TestNeighborhoodClient:
    @patch("cbs_client.get_json")
    def test_parses_row(self, mock_get):
        mock_get.return_value = _odata(NEIGHBORHOOD_ROW)

        stats = CbsNeighborhoodClient().fetch(make_location(), threading.Event())

        assert stats.region_code == "BU03630000"
        assert stats.region_type == "Buurt"
        assert stats.residents == 1200
        assert stats.urbanity == "1"
        assert stats.average_income_per_inhabitant == 36.2
        assert stats.pct_post_2000 == 9
        assert stats.distance_to_supermarket == 0.4
        assert stats.retrieved_at.tzinfo is not None

    @patch("cbs_client.get_json")
    def test_infinite_cell_drops_only_that_field(self, mock_get):
        mock_get.return_value = _odata({**NEIGHBORHOOD_ROW, "AantalInwoners_5": "Infinity"})

        stats = CbsNeighborhoodClient().fetch(make_location(), threading.Event())

        assert stats.residents is None
        assert stats.average_income_per_inhabitant == 36.2

    @patch("cbs_client.get_json")
    def test_query_shape(self, mock_get):
        mock_get.return_value = _odata(NEIGHBORHOOD_ROW)
        CbsNeighborhoodClient(base_url="https://cbs.test/odata/").fetch(make_location(), threading.Event())

        args, kwargs = mock_get.call_args
        assert args[0] == "cbs"
        assert args[1] == "85618NED"
        assert args[2] == "https://cbs.test/odata/85618NED/TypedDataSet"
        assert kwargs["params"]["$filter"] == "WijkenEnBuurten eq 'BU03630000'"
        assert kwargs["params"]["$top"] == 1

    @patch("cbs_client.get_json")
    def test_falls_back_to_district(self, mock_get):
        mock_get.side_effect = [_odata(None), _odata(dict(NEIGHBORHOOD_ROW, WijkenEnBuurten="WK036300"))]

        stats = CbsNeighborhoodClient().fetch(make_location(), threading.Event())

        assert stats.region_code == "WK036300"
        assert mock_get.call_count == 2

    @patch("cbs_client.get_json")
    def test_no_rows_anywhere_is_none(self, mock_get):
        mock_get.return_value = _odata(None)
        assert CbsNeighborhoodClient().fetch(make_location(), threading.Event()) is None
        assert mock_get.call_count == 3

    @patch("cbs_client.get_json")
    def test_rows_cached_including_empty(self, mock_get):
        mock_get.side_effect = [_odata(None), _odata(NEIGHBORHOOD_ROW)]
        client = CbsNeighborhoodClient()
        client.fetch(make_location(), threading.Event())

        assert get_source_cache("cbs:neighborhood", "BU03630000", 60) == "{}"
        client.fetch(make_location(), threading.Event())
        assert mock_get.call_count == 2

    @patch("cbs_client.get_json")
    def test_http_error_propagates(self, mock_get):
        mock_get.side_effect = ValueError("not json")
        with pytest.raises(ValueError):
            CbsNeighborhoodClient().fetch(make_location(), threading.Event())

    @patch("cbs_client.get_json")
    def test_cancelled_before_request(self, mock_get):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SourceCancelledError):
            CbsNeighborhoodClient().fetch(make_location(), cancel)
        mock_get.assert_not_called()


# =========================================================================
# Crime and demographics tables
# =========================================================================

class TestCrimeClient:
    @patch("cbs_client.get_json")
    def test_rates_per_1000(self, mock_get):
        mock_get.return_value = _odata({
            "AantalInwoners_5": 2000,
            "TotaalDiefstalUitWoningSchuurED_106": 40,
            "VernielingMisdrijfTegenOpenbareOrde_107": 10,
            "GeweldsEnSeksueleMisdrijven_108": 6,
        })

        crime = CbsCrimeClient().fetch(make_location(), threading.Event())

        assert crime.theft_per_1000 == 20
        assert crime.burglary_per_1000 == 20
        assert crime.vandalism_per_1000 == 5
        assert crime.violent_per_1000 == 3
        assert crime.total_per_1000 == 28

    @patch("cbs_client.get_json")
    def test_all_suppressed_total_is_none(self, mock_get):
        mock_get.return_value = _odata({"AantalInwoners_5": 50})
        crime = CbsCrimeClient().fetch(make_location(), threading.Event())
        assert crime.total_per_1000 is None


class TestDemographicsClient:
    @patch("cbs_client.get_json")
    def test_parses_row(self, mock_get):
        mock_get.return_value = _odata({
            "k_0Tot15Jaar_8": 8, "k_15Tot25Jaar_9": 14, "k_25Tot45Jaar_10": 41,
            "k_45Tot65Jaar_11": 24, "k_65JaarOfOuder_12": 13,
            "GemiddeldeHuishoudensgrootte_32": "1,5",
            "Koopwoningen_40": 22, "Eenpersoonshuishoudens_29": 66,
            "HuishoudensMetKinderen_31": 12,
        })
        demo = CbsDemographicsClient().fetch(make_location(), threading.Event())
        assert demo.pct_age_25_44 == 41
        assert demo.average_household_size == 1.5
        assert demo.pct_family_households == 12

    @patch("cbs_client.get_json")
    def test_does_not_share_cache_with_crime(self, mock_get):
        mock_get.side_effect = [
            _odata({"AantalInwoners_5": 1000, "GeweldsEnSeksueleMisdrijven_108": 5}),
            _odata({"k_0Tot15Jaar_8": 9}),
        ]
        CbsCrimeClient().fetch(make_location(), threading.Event())
        demo = CbsDemographicsClient().fetch(make_location(), threading.Event())

        assert demo.pct_age_0_14 == 9
        assert mock_get.call_count == 2
