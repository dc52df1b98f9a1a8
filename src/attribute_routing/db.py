from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .catalog import VALUE_TYPES, AttributeCatalog, DataUnavailableError, build_catalog

SCHEMA = """
CREATE TABLE IF NOT EXISTS teams (
    id INTEGER PRIMARY KEY,
    org_id INTEGER NOT NULL,
    name TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS attributes (
    id TEXT PRIMARY KEY,
    org_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS attribute_options (
    id TEXT PRIMARY KEY,
    attribute_id TEXT NOT NULL,
    value TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (attribute_id) REFERENCES attributes(id)
);

CREATE TABLE IF NOT EXISTS memberships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    team_id INTEGER NOT NULL,
    member_id TEXT NOT NULL,
    UNIQUE (team_id, member_id),
    FOREIGN KEY (team_id) REFERENCES teams(id)
);

CREATE TABLE IF NOT EXISTS attribute_assignments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    member_id TEXT NOT NULL,
    option_id TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0
);
"""


def connect(db_path: str | Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str | Path) -> None:
    conn = connect(db_path)
    try:
        with conn:
            conn.executescript(SCHEMA)
            migrate_assignment_indexes(conn)
    finally:
        conn.close()


def migrate_assignment_indexes(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_attribute_assignments_member
        ON attribute_assignments(member_id, position)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_attribute_options_attribute
        ON attribute_options(attribute_id, position)
        """
    )


def add_team(conn: sqlite3.Connection, team_id: int, org_id: int, name: str = "") -> None:
    conn.execute("INSERT INTO teams(id, org_id, name) VALUES (?, ?, ?)", (team_id, org_id, name))


def add_attribute(
    conn: sqlite3.Connection,
    org_id: int,
    attribute_id: str,
    name: str,
    value_type: str,
    options: Iterable[tuple[str, str]] = (),
) -> None:
    if value_type not in VALUE_TYPES:
        raise ValueError(f"unsupported attribute type: {value_type}")
    position = conn.execute("SELECT COUNT(*) FROM attributes WHERE org_id = ?", (org_id,)).fetchone()[0]
    conn.execute(
        "INSERT INTO attributes(id, org_id, name, type, position) VALUES (?, ?, ?, ?, ?)",
        (attribute_id, org_id, name, value_type, position),
    )
    for option_position, (option_id, value) in enumerate(options):
        conn.execute(
            "INSERT INTO attribute_options(id, attribute_id, value, position) VALUES (?, ?, ?, ?)",
            (option_id, attribute_id, value, option_position),
        )


def add_member(conn: sqlite3.Connection, team_id: int, member_id: str) -> None:
    conn.execute("INSERT INTO memberships(team_id, member_id) VALUES (?, ?)", (team_id, member_id))


def assign_option(conn: sqlite3.Connection, member_id: str, option_id: str, position: int = 0) -> None:
    conn.execute(
        "INSERT INTO attribute_assignments(member_id, option_id, position) VALUES (?, ?, ?)",
        (member_id, option_id, position),
    )


@dataclass(slots=True, frozen=True)
class SqliteCatalogFetcher:
    """Reads an org's attribute definitions and a team's assigned option values."""

    db_path: str | Path

    def fetch_attributes_and_assignments(self, team_id: int, org_id: int) -> AttributeCatalog:
        conn = connect(self.db_path)
        try:
            team = conn.execute(
                "SELECT id FROM teams WHERE id = ? AND org_id = ?",
                (team_id, org_id),
            ).fetchone()
            if team is None:
                raise DataUnavailableError(f"team {team_id} not found in org {org_id}")

            attributes = _load_attributes(conn, org_id)
            members = _load_member_values(conn, team_id, org_id)
        except sqlite3.Error as exc:
            raise DataUnavailableError(f"attribute catalog query failed: {exc}") from exc
        finally:
            conn.close()

        return build_catalog(attributes, members)


def _load_attributes(conn: sqlite3.Connection, org_id: int) -> list[dict[str, Any]]:
    attributes: dict[str, dict[str, Any]] = {}
    for row in conn.execute(
        "SELECT id, name, type FROM attributes WHERE org_id = ? ORDER BY position, id",
        (org_id,),
    ).fetchall():
        attributes[row["id"]] = {"id": row["id"], "name": row["name"], "type": row["type"], "options": []}

    for row in conn.execute(
        """
        SELECT o.id, o.attribute_id, o.value
        FROM attribute_options o
        JOIN attributes a ON a.id = o.attribute_id
        WHERE a.org_id = ?
        ORDER BY o.attribute_id, o.position, o.id
        """,
        (org_id,),
    ).fetchall():
        attributes[row["attribute_id"]]["options"].append({"id": row["id"], "value": row["value"]})

    return list(attributes.values())


def _load_member_values(
    conn: sqlite3.Connection,
    team_id: int,
    org_id: int,
) -> dict[str, dict[str, list[Any]]]:
    """Collect each team member's assigned option values for the org's attributes.

    Members belong to teams in several orgs, so options of other orgs' attributes
    are skipped. An assignment pointing at no option at all is corrupt data.
    """
    members: dict[str, dict[str, list[Any]]] = {}
    rows = conn.execute(
        """
        SELECT m.member_id, a.option_id, o.attribute_id, o.value, attr.org_id AS attribute_org_id
        FROM memberships m
        LEFT JOIN attribute_assignments a ON a.member_id = m.member_id
        LEFT JOIN attribute_options o ON o.id = a.option_id
        LEFT JOIN attributes attr ON attr.id = o.attribute_id
        WHERE m.team_id = ?
        ORDER BY m.id, a.position, a.id
        """,
        (team_id,),
    ).fetchall()

    for row in rows:
        values = members.setdefault(row["member_id"], {})
        if row["option_id"] is None:
            continue
        if row["attribute_id"] is None:
            raise DataUnavailableError(
                f"member {row['member_id']!r} is assigned unknown option {row['option_id']!r}"
            )
        if row["attribute_org_id"] != org_id:
            continue
        values.setdefault(row["attribute_id"], []).append(row["value"])

    return members
