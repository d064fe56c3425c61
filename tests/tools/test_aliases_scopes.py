"""Unit tests for tool name resolution, the catalogue and scope projection.

Tests cover:
- resolve_tool_name: canonical names, legacy aliases, dotted names
- build_alias_table: alias targets must exist
- catalogue invariants: unique names, declared path parameters
- available_tools: union over scopes, unknown scopes ignored
"""

from __future__ import annotations

import pytest

from ms365_gateway.exceptions import UnknownToolError
from ms365_gateway.tools.aliases import (
    LEGACY_ALIASES,
    ToolLocation,
    build_alias_table,
    resolve_tool_name,
)
from ms365_gateway.tools.catalogue import TOOL_CATALOGUE, ToolDefinition, get_tool, tools_by_module
from ms365_gateway.tools.scopes import SCOPE_TOOL_MAP, available_tools


@pytest.fixture(scope="module")
def table() -> dict[str, ToolLocation]:
    return build_alias_table()


# =============================================================================
# Name resolution
# =============================================================================


class TestResolveToolName:
    """Tests for resolve_tool_name."""

    def test_canonical_name(self, table: dict[str, ToolLocation]) -> None:
        assert resolve_tool_name("getInbox", table) == ToolLocation("mail", "getInbox")

    @pytest.mark.parametrize(
        ("alias", "expected"),
        [
            ("getMail", ToolLocation("mail", "getInbox")),
            ("readMail", ToolLocation("mail", "getInbox")),
            ("sendMail", ToolLocation("mail", "sendEmail")),
            ("searchMail", ToolLocation("mail", "searchEmails")),
            ("getCalendar", ToolLocation("calendar", "getEvents")),
            ("deleteEvent", ToolLocation("calendar", "cancelEvent")),
        ],
    )
    def test_legacy_alias(self, table: dict[str, ToolLocation], alias: str, expected: ToolLocation) -> None:
        """Given a legacy name, resolves to the canonical tool."""
        assert resolve_tool_name(alias, table) == expected

    def test_dotted_name(self, table: dict[str, ToolLocation]) -> None:
        assert resolve_tool_name("files.listFiles", table) == ToolLocation("files", "listFiles")

    @pytest.mark.parametrize(
        ("name", "method"),
        [("calendar.create", "createEvent"), ("people.find", "findPeople"), ("mail.sendMail", "sendEmail")],
    )
    def test_dotted_method_alias(self, table: dict[str, ToolLocation], name: str, method: str) -> None:
        assert resolve_tool_name(name, table).method == method

    def test_dotted_name_is_not_checked_here(self, table: dict[str, ToolLocation]) -> None:
        """Whether the module has the method is the registry's concern."""
        assert resolve_tool_name("mail.noSuchThing", table) == ToolLocation("mail", "noSuchThing")

    @pytest.mark.parametrize("name", ["", "noSuchTool", ".getInbox", "mail."])
    def test_unknown(self, table: dict[str, ToolLocation], name: str) -> None:
        with pytest.raises(UnknownToolError) as exc_info:
            resolve_tool_name(name, table)

        assert exc_info.value.code == "UNKNOWN_TOOL"


class TestBuildAliasTable:
    """Tests for build_alias_table."""

    def test_every_alias_is_present(self, table: dict[str, ToolLocation]) -> None:
        assert set(LEGACY_ALIASES) <= set(table)

    def test_alias_to_missing_tool_is_rejected(self) -> None:
        """A catalogue without getInbox cannot host the getMail alias."""
        catalogue = [t for t in TOOL_CATALOGUE if t.name != "getInbox"]

        with pytest.raises(ValueError, match="getMail"):
            build_alias_table(catalogue)


# =============================================================================
# Catalogue
# =============================================================================


class TestCatalogue:
    """Catalogue-wide invariants."""

    def test_names_are_unique(self) -> None:
        names = [t.name for t in TOOL_CATALOGUE]

        assert len(names) == len(set(names))

    def test_undeclared_path_parameter(self) -> None:
        with pytest.raises(ValueError, match="messageId"):
            ToolDefinition("broken", "mail", "Broken", ("GET",), "/mail/{messageId}")

    def test_public_dict(self) -> None:
        """GET /tools entries carry the /api/v1 endpoint and parameter schemas."""
        # Act
        entry = get_tool("getInbox").to_public_dict()

        # Assert
        assert entry["endpoint"] == "/api/v1/mail"
        assert entry["method"] == "GET"
        assert entry["parameters"]["top"] == {
            "type": "integer",
            "description": "Maximum number of items to return",
            "default": 20,
            "minimum": 1,
            "maximum": 100,
            "required": False,
        }

    def test_grouped_by_module(self) -> None:
        grouped = tools_by_module()

        assert {"mail", "calendar", "files", "people", "search", "teams", "todo", "contacts", "groups"} <= set(grouped)
        assert all(t.module == "mail" for t in grouped["mail"])

    def test_scope_map_only_names_catalogue_tools(self) -> None:
        names = {t.name for t in TOOL_CATALOGUE}

        for tools in SCOPE_TOOL_MAP.values():
            assert tools <= names


# =============================================================================
# Scope projection
# =============================================================================


class TestAvailableTools:
    """Tests for available_tools."""

    def test_union_of_scopes(self) -> None:
        """Tools from every scope are merged, de-duplicated and sorted."""
        # Act
        tools = available_tools(["Mail.Read", "Files.Read"])

        # Assert
        assert tools == [
            "downloadFile",
            "getEmailDetails",
            "getFileContent",
            "getFileMetadata",
            "getInbox",
            "getMailAttachments",
            "getSharingLinks",
            "listFiles",
            "search",
            "searchEmails",
            "searchFiles",
        ]

    def test_user_read(self) -> None:
        assert available_tools(["User.Read"]) == ["getProfile"]

    def test_unknown_scopes_add_nothing(self) -> None:
        assert available_tools(["offline_access", "openid", "Made.Up"]) == []

    def test_write_scope_includes_read_tools(self) -> None:
        assert set(available_tools(["Mail.Read"])) <= set(available_tools(["Mail.ReadWrite"]))
