"""Shared fixtures for the buurtcheck test suite.

Provides a Flask test client wired to a temporary SQLite database, a
resolved sample location and builders for provider payloads.
"""

import atexit
import os
import tempfile
from datetime import datetime, timezone

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["BUURTCHECK_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Never talk to Sentry from tests; keep rate limits out of the way
os.environ.pop("SENTRY_DSN", None)
os.environ["RATE_LIMIT_DEFAULT"] = "10000/minute"
os.environ["RATE_LIMIT_REPORT"] = "10000/minute"

from app import app  # noqa: E402
from models import init_db, _get_db  # noqa: E402
from sources import (  # noqa: E402
    AirQualitySnapshot,
    AmenityStats,
    CrimeStats,
    Demographics,
    FoundationRisk,
    Location,
    NeighborhoodStats,
    SolarPotential,
)

RETRIEVED_AT = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the cache tables before every test, keeping the schema intact."""
    init_db()
    conn = _get_db()
    for table in ("report_cache", "source_cache", "overpass_cache"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    yield


@pytest.fixture()
def client():
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


@pytest.fixture()
def location():
    return make_location()


@pytest.fixture()
def payloads():
    return make_payloads()


def make_location(**overrides):
    fields = dict(
        query="Damrak 1, Amsterdam",
        display_address="Damrak 1, 1012LG Amsterdam",
        latitude=52.37616,
        longitude=4.89594,
        rd_x=121852.0,
        rd_y=487900.0,
        municipality_code="GM0363",
        municipality_name="Amsterdam",
        district_code="WK036300",
        district_name="Burgwallen-Oude Zijde",
        neighborhood_code="BU03630000",
        neighborhood_name="Kop Zeedijk",
        postal_code="1012LG",
    )
    fields.update(overrides)
    return Location(**fields)


def make_payloads():
    """One complete, scoreable payload per registered source."""
    return {
        "cbs": NeighborhoodStats(
            region_code="BU03630000",
            region_type="Buurt",
            retrieved_at=RETRIEVED_AT,
            residents=1200,
            population_density=3000,
            average_woz_keur=450.0,
            low_income_households_pct=5.0,
            urbanity="1",
            average_income_per_inhabitant=32.0,
            education_low=100,
            education_medium=300,
            education_high=600,
            pct_owner_occupied=40,
            pct_rental=60,
            pct_social_housing=25,
            pct_private_rental=35,
            pct_pre_2000=80,
            pct_post_2000=20,
            pct_multi_family=90,
            cars_per_household=0.4,
            car_density=1500,
            total_cars=300,
            distance_to_gp=0.4,
            distance_to_supermarket=0.2,
            distance_to_daycare=0.3,
            distance_to_school=0.5,
            schools_within_3km=25.0,
        ),
        "crime": CrimeStats(
            retrieved_at=RETRIEVED_AT,
            total_per_1000=60,
            burglary_per_1000=4,
            violent_per_1000=8,
            theft_per_1000=4,
            vandalism_per_1000=10,
        ),
        "demographics": Demographics(
            retrieved_at=RETRIEVED_AT,
            pct_age_0_14=10,
            pct_age_15_24=15,
            pct_age_25_44=40,
            pct_age_45_64=25,
            pct_age_65_plus=10,
            average_household_size=1.6,
            pct_owner_occupied=40,
            pct_single_households=60,
            pct_family_households=15,
        ),
        "amenities": AmenityStats(
            retrieved_at=RETRIEVED_AT,
            school_count=3,
            supermarket_count=4,
            park_count=2,
            healthcare_count=6,
            transit_stop_count=10,
            charging_station_count=1,
            nearest_amenity_distance_m=120,
            diversity_score=100.0,
        ),
        "air_quality": AirQualitySnapshot(
            station_id="NL49014",
            station_name="Amsterdam-Vondelpark",
            station_distance_m=1800,
            retrieved_at=RETRIEVED_AT,
            pm25=8.0,
            pm10=18.0,
            no2=28.0,
            o3=50.0,
        ),
        "soil": FoundationRisk(
            risk_level="High",
            soil_type="veen",
            retrieved_at=RETRIEVED_AT,
            description="Peat soil carries a high risk of subsidence and foundation issues.",
        ),
        "solar": SolarPotential(
            potential="Medium",
            retrieved_at=RETRIEVED_AT,
            roof_area_m2=120.0,
            installable_panels=24,
            estimated_generation_kwh=7200.0,
        ),
    }
