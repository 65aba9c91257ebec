"""
Plan catalog tests.

Covers default limits, pro-gating, upload caps, upsell hints and loading
limits from a JSON file.
"""
import json

import pytest

from quota_ledger.core.errors import ConfigurationError
from quota_ledger.features.plans.catalog import (
    DEFAULT_PLAN_LIMITS,
    PlanCatalog,
    get_catalog,
    reset_catalog_cache,
)
from quota_ledger.models.dimension import Dimension
from quota_ledger.models.plan import PlanTier, UNLIMITED


@pytest.fixture
def catalog():
    return PlanCatalog.from_mapping(DEFAULT_PLAN_LIMITS)


class TestDefaultLimits:
    @pytest.mark.parametrize(
        "plan,dimension,expected",
        [
            ("free", "text_message", 3),
            ("free", "area_message", 1),
            ("free", "standard_vocalize", 1),
            ("free", "pro_vocalize", 0),
            ("committed", "text_message", 30),
            ("committed", "area_message", 15),
            ("committed", "standard_vocalize", 5),
            ("committed", "pro_vocalize", 2),
            ("locked_in", "text_message", UNLIMITED),
            ("locked_in", "area_message", 50),
            ("locked_in", "standard_vocalize", 15),
            ("locked_in", "pro_vocalize", 5),
            ("locked_in_legacy", "pro_vocalize", 7),
        ],
    )
    def test_limit(self, catalog, plan, dimension, expected):
        assert catalog.limit(plan, dimension) == expected

    def test_unknown_plan_raises(self, catalog):
        with pytest.raises(ConfigurationError):
            catalog.limit("platinum", "text_message")

    def test_unknown_dimension_raises(self, catalog):
        with pytest.raises(ConfigurationError):
            catalog.limit("free", "video_call")


class TestGatingAndHints:
    def test_only_pro_vocalize_is_pro_gated(self, catalog):
        gated = {d for d in Dimension if catalog.is_pro_gated(d)}
        assert gated == {Dimension.PRO_VOCALIZE}

    def test_upload_caps(self, catalog):
        assert catalog.max_upload_mb(PlanTier.FREE) == 20
        assert catalog.max_upload_mb(PlanTier.COMMITTED) == 30
        assert catalog.max_upload_mb(PlanTier.LOCKED_IN) == 40

    def test_upsell_hints(self, catalog):
        assert "Upgrade to Committed" in catalog.upsell_hint(PlanTier.FREE)
        assert "Upgrade to Locked In" in catalog.upsell_hint(PlanTier.COMMITTED)
        assert catalog.upsell_hint(PlanTier.LOCKED_IN) == "Purchase additional credits to continue."


class TestValidation:
    def test_missing_plan_rejected(self):
        limits = {k: v for k, v in DEFAULT_PLAN_LIMITS.items() if k != "committed"}
        with pytest.raises(ConfigurationError, match="committed"):
            PlanCatalog.from_mapping(limits)

    def test_missing_dimension_rejected(self):
        limits = json.loads(json.dumps(DEFAULT_PLAN_LIMITS))
        del limits["free"]["area_message"]
        with pytest.raises(ConfigurationError, match="area_message"):
            PlanCatalog.from_mapping(limits)

    def test_below_unlimited_rejected(self):
        limits = json.loads(json.dumps(DEFAULT_PLAN_LIMITS))
        limits["free"]["text_message"] = -2
        with pytest.raises(ConfigurationError):
            PlanCatalog.from_mapping(limits)

    def test_non_integer_rejected(self):
        limits = json.loads(json.dumps(DEFAULT_PLAN_LIMITS))
        limits["free"]["text_message"] = "3"
        with pytest.raises(ConfigurationError):
            PlanCatalog.from_mapping(limits)


class TestLimitsFile:
    def test_file_replaces_defaults(self, tmp_path, test_settings, monkeypatch):
        limits = json.loads(json.dumps(DEFAULT_PLAN_LIMITS))
        limits["free"]["text_message"] = 10
        path = tmp_path / "limits.json"
        path.write_text(json.dumps({"limits": limits, "max_upload_mb": {"free": 5}}))

        monkeypatch.setattr(test_settings, "PLAN_LIMITS_FILE", str(path))
        reset_catalog_cache()

        catalog = get_catalog()
        assert catalog.limit("free", "text_message") == 10
        assert catalog.max_upload_mb("free") == 5

    def test_unreadable_file_is_configuration_error(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            PlanCatalog.from_file(str(path))
