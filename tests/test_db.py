import pytest

from attribute_routing.catalog import DataUnavailableError
from attribute_routing.db import (
    SqliteCatalogFetcher,
    add_attribute,
    add_member,
    add_team,
    assign_option,
    connect,
    init_db,
)
from attribute_routing.service import find_matching_members


def seed(db_path) -> None:
    init_db(db_path)
    conn = connect(db_path)
    with conn:
        add_team(conn, 1, 100, "Sales desk")
        add_team(conn, 2, 200, "Other org")
        add_attribute(
            conn,
            100,
            "department",
            "Department",
            "option",
            [("dep-sales", "Sales"), ("dep-support", "Support")],
        )
        add_attribute(conn, 100, "regions", "Regions", "multiOption", [("reg-eu", "EU"), ("reg-us", "US")])
        add_attribute(conn, 200, "tier", "Tier", "option", [("tier-gold", "Gold")])
        for member_id in ("A", "B", "C"):
            add_member(conn, 1, member_id)
        assign_option(conn, "A", "dep-sales")
        assign_option(conn, "A", "reg-us", position=1)
        assign_option(conn, "A", "reg-eu", position=0)
        assign_option(conn, "B", "dep-support")
    conn.close()


def test_fetch_returns_definitions_and_member_values(tmp_path) -> None:
    db = tmp_path / "catalog.db"
    seed(db)

    catalog = SqliteCatalogFetcher(db).fetch_attributes_and_assignments(1, 100)

    assert [definition.id for definition in catalog.attributes] == ["department", "regions"]
    assert catalog.attribute("department").allowed_option_ids == {"dep-sales", "dep-support"}
    assert catalog.attribute("regions").is_multi_valued is True
    assert catalog.member_ids() == ["A", "B", "C"]
    assert catalog.members[0].get("regions") == ("EU", "US")
    assert catalog.members[1].get("department") == ("Support",)
    assert catalog.members[2].values == {}


def test_fetch_rejects_team_from_other_org(tmp_path) -> None:
    db = tmp_path / "catalog.db"
    seed(db)
    with pytest.raises(DataUnavailableError, match="team 1 not found in org 200"):
        SqliteCatalogFetcher(db).fetch_attributes_and_assignments(1, 200)


def test_fetch_rejects_dangling_assignments(tmp_path) -> None:
    db = tmp_path / "catalog.db"
    seed(db)
    conn = connect(db)
    with conn:
        assign_option(conn, "C", "dep-missing")
    conn.close()

    with pytest.raises(DataUnavailableError, match="unknown option 'dep-missing'"):
        SqliteCatalogFetcher(db).fetch_attributes_and_assignments(1, 100)


def test_fetch_skips_values_of_other_org_attributes(tmp_path) -> None:
    db = tmp_path / "catalog.db"
    seed(db)
    conn = connect(db)
    with conn:
        assign_option(conn, "C", "tier-gold")
    conn.close()

    catalog = SqliteCatalogFetcher(db).fetch_attributes_and_assignments(1, 100)

    assert catalog.member_ids() == ["A", "B", "C"]
    assert catalog.members[2].values == {}


def test_member_of_teams_in_two_orgs_keeps_each_orgs_values(tmp_path) -> None:
    db = tmp_path / "catalog.db"
    seed(db)
    conn = connect(db)
    with conn:
        add_member(conn, 2, "C")
        assign_option(conn, "C", "dep-sales")
        assign_option(conn, "C", "tier-gold")
    conn.close()

    fetcher = SqliteCatalogFetcher(db)
    sales_desk = fetcher.fetch_attributes_and_assignments(1, 100)
    other_org = fetcher.fetch_attributes_and_assignments(2, 200)

    assert sales_desk.members[2].values == {"department": ("Sales",)}
    assert other_org.member_ids() == ["C"]
    assert other_org.members[0].values == {"tier": ("Gold",)}


def test_fetch_wraps_database_errors(tmp_path) -> None:
    with pytest.raises(DataUnavailableError, match="attribute catalog query failed"):
        SqliteCatalogFetcher(tmp_path / "empty.db").fetch_attributes_and_assignments(1, 100)


def test_add_attribute_rejects_unknown_type(tmp_path) -> None:
    db = tmp_path / "catalog.db"
    init_db(db)
    conn = connect(db)
    with pytest.raises(ValueError, match="unsupported attribute type"):
        add_attribute(conn, 100, "start", "Start", "date")
    conn.close()


def test_sqlite_catalog_drives_matching(tmp_path) -> None:
    db = tmp_path / "catalog.db"
    seed(db)

    outcome = find_matching_members(
        SqliteCatalogFetcher(db),
        1,
        100,
        {"attributeId": "regions", "operator": "ANY_IN", "value": ["{field:region}"]},
        fallback_query_value={"attributeId": "department", "operator": "NONE_IN", "value": ["Sales"]},
        dynamic_operands={"field": {"region": "APAC"}},
    )

    assert outcome.matched_member_ids == {"B", "C"}
    assert outcome.checked_fallback is True
