import pytest

from loginguard.services import geo


def test_unknown_country_is_allowed(db_session):
    assert geo.is_country_blocked(db_session, "FR") is False
    assert geo.is_country_blocked(db_session, None) is False


def test_blocked_country(db_session):
    geo.upsert_rule(db_session, country_code="kp", is_blocked=True, country_name="North Korea")

    assert geo.is_country_blocked(db_session, "KP") is True
    assert geo.is_country_blocked(db_session, "kp") is True


def test_rule_can_be_disabled_and_deleted(db_session):
    geo.upsert_rule(db_session, country_code="IR", is_blocked=True)
    rule = geo.upsert_rule(db_session, country_code="IR", is_blocked=False, reason="lifted")

    assert rule.is_blocked is False
    assert geo.is_country_blocked(db_session, "IR") is False
    assert len(geo.list_rules(db_session)) == 1
    assert geo.delete_rule(db_session, "ir") is True
    assert geo.delete_rule(db_session, "ir") is False


@pytest.mark.parametrize("code", ["", "K", "KPR", "1A"])
def test_invalid_country_code_rejected(db_session, code):
    with pytest.raises(ValueError):
        geo.upsert_rule(db_session, country_code=code, is_blocked=True)
