"""
Unit tests for the plan entitlement catalog.

Tests cover:
- Built-in limits per tier
- Plan, feature and resource aliases
- YAML override loading and validation
"""

import pytest

from citaclick.entitlements.catalog import (
    UNLIMITED,
    EntitlementCatalog,
    Feature,
    PlanTier,
    ResourceKind,
    UnknownFeatureError,
    UnknownPlanError,
    UnknownResourceError,
    get_entitlement_catalog,
    normalize_feature,
    normalize_plan,
    normalize_resource,
    reset_entitlement_catalog,
)


@pytest.fixture
def catalog():
    return get_entitlement_catalog()


class TestBuiltInPlans:
    """Tests for the default plan table."""

    def test_basico_limits(self, catalog):
        limits = catalog.limits_for("basico")

        assert limits.max_usuarios == 2
        assert limits.max_clientes == 50
        assert limits.max_citas_mes == 100
        assert limits.max_servicios == 10
        assert limits.has_feature(Feature.EMAIL_REMINDERS)
        assert not limits.has_feature("sms")
        assert not limits.has_feature("reportes_avanzados")

    def test_profesional_limits(self, catalog):
        limits = catalog.limits_for(PlanTier.PROFESIONAL)

        assert limits.max_usuarios == 5
        assert limits.max_clientes == 300
        assert limits.max_citas_mes == 500
        assert limits.max_servicios == 30
        assert limits.has_feature("reportes_avanzados")
        assert not limits.has_feature("whatsapp")

    def test_premium_is_unlimited_with_every_feature(self, catalog):
        limits = catalog.limits_for("premium")

        for resource in ResourceKind:
            assert limits.limit_for(resource) == UNLIMITED
            assert limits.is_unlimited(limits.limit_for(resource))
        for feature in Feature:
            assert limits.has_feature(feature)

    def test_all_plans_in_tier_order(self, catalog):
        plans = [limits.plan for limits in catalog.all_plans()]
        assert plans == [PlanTier.BASICO, PlanTier.PROFESIONAL, PlanTier.PREMIUM]

    def test_to_dict_lists_every_feature(self, catalog):
        data = catalog.limits_for("basico").to_dict()

        assert data["plan"] == "basico"
        assert data["nombre"] == "Básico"
        assert set(data["features"]) == {f.value for f in Feature}
        assert data["features"]["email_reminders"] is True
        assert data["features"]["sms_whatsapp"] is False


class TestAliases:
    """Tests for key normalisation."""

    @pytest.mark.parametrize("key,expected", [
        ("starter", PlanTier.BASICO),
        ("professional", PlanTier.PROFESIONAL),
        ("enterprise", PlanTier.PREMIUM),
        (" Premium ", PlanTier.PREMIUM),
    ])
    def test_plan_aliases(self, key, expected):
        assert normalize_plan(key) == expected

    def test_alias_and_canonical_key_share_limits(self, catalog):
        assert catalog.limits_for("starter") == catalog.limits_for("basico")

    def test_feature_aliases(self):
        assert normalize_feature("sms") == Feature.SMS_WHATSAPP
        assert normalize_feature("whatsapp") == Feature.SMS_WHATSAPP
        assert normalize_feature("reportes_avanzados") == Feature.ADVANCED_REPORTS

    def test_resource_aliases(self):
        assert normalize_resource("clients") == ResourceKind.CLIENTES
        assert normalize_resource("citas") == ResourceKind.CITAS_MES

    def test_unknown_plan(self, catalog):
        with pytest.raises(UnknownPlanError):
            catalog.limits_for("gold")

    def test_unknown_feature(self):
        with pytest.raises(UnknownFeatureError):
            normalize_feature("teleportation")

    def test_unknown_resource(self):
        with pytest.raises(UnknownResourceError):
            normalize_resource("sucursales")


class TestYamlOverride:
    """Tests for PLAN_CATALOG_PATH overrides."""

    def test_override_changes_only_listed_values(self, tmp_path):
        path = tmp_path / "plans.yml"
        path.write_text(
            "plans:\n"
            "  basico:\n"
            "    max_clientes: 75\n"
            "    features: [email_reminders, sms]\n"
        )
        reset_entitlement_catalog()
        catalog = EntitlementCatalog(str(path))
        limits = catalog.limits_for("basico")

        assert limits.max_clientes == 75
        assert limits.max_usuarios == 2
        assert limits.has_feature("sms")
        assert catalog.limits_for("profesional").max_clientes == 300

    def test_override_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "plans.yml"
        path.write_text("plans:\n  starter:\n    max_servicios: -1\n")
        monkeypatch.setenv("PLAN_CATALOG_PATH", str(path))
        reset_entitlement_catalog()

        assert get_entitlement_catalog().limits_for("basico").max_servicios == UNLIMITED

    def test_negative_limit_rejected(self, tmp_path):
        path = tmp_path / "plans.yml"
        path.write_text("plans:\n  basico:\n    max_clientes: -5\n")
        reset_entitlement_catalog()

        with pytest.raises(ValueError, match="max_clientes"):
            EntitlementCatalog(str(path))

    def test_singleton(self):
        assert get_entitlement_catalog() is get_entitlement_catalog()
