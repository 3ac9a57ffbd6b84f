from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from gcli_gateway.core.domain.credentials import CredentialStatus, PersistedStatus
from gcli_gateway.core.services.credential_loader import (
    load_credentials_dir,
    parse_credential,
    parse_expiry,
)
from gcli_gateway.core.services.state_store import JsonFileStateStore

CREDENTIAL = {
    "client_id": "id.apps.googleusercontent.com",
    "client_secret": "GOCSPX-secret",
    "token": "ya29.access",
    "refresh_token": "1//refresh",
    "scopes": ["https://www.googleapis.com/auth/cloud-platform"],
    "token_uri": "https://oauth2.googleapis.com/token",
    "project_id": "my-project",
    "expiry": "2025-08-01T10:00:00Z",
}


def write_json(path: Path, data) -> None:
    path.write_text(json.dumps(data), encoding="utf-8")


class TestParseExpiry:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("2025-08-01T10:00:00Z", datetime(2025, 8, 1, 10, tzinfo=timezone.utc)),
            ("2025-08-01T12:00:00+02:00", datetime(2025, 8, 1, 10, tzinfo=timezone.utc)),
            ("2025-08-01T10:00:00", datetime(2025, 8, 1, 10, tzinfo=timezone.utc)),
        ],
    )
    def test_formats(self, value, expected) -> None:
        assert parse_expiry(value) == expected

    @pytest.mark.parametrize("value", [None, "", "yesterday", 12345])
    def test_unusable_values(self, value) -> None:
        assert parse_expiry(value) is None


class TestParseCredential:
    def test_gemini_cli_layout(self) -> None:
        seed = parse_credential("alice", CREDENTIAL)
        assert seed.credential_id == "alice"
        assert seed.access_token == "ya29.access"
        assert seed.project_id == "my-project"
        assert seed.scopes == ("https://www.googleapis.com/auth/cloud-platform",)
        assert seed.expiry == datetime(2025, 8, 1, 10, tzinfo=timezone.utc)

    def test_plain_layout(self) -> None:
        data = {k: v for k, v in CREDENTIAL.items() if k not in ("token", "scopes")}
        data["access_token"] = "ya29.plain"
        data["scope"] = "a b"
        seed = parse_credential("bob", data)
        assert seed.access_token == "ya29.plain"
        assert seed.scopes == ("a", "b")

    @pytest.mark.parametrize("missing", ["refresh_token", "client_id", "client_secret"])
    def test_required_fields(self, missing) -> None:
        data = {k: v for k, v in CREDENTIAL.items() if k != missing}
        with pytest.raises(ValueError):
            parse_credential("x", data)


class TestLoadCredentialsDir:
    def test_sorted_by_file_name_and_bad_files_skipped(self, tmp_path: Path) -> None:
        write_json(tmp_path / "b.json", CREDENTIAL)
        write_json(tmp_path / "a.json", CREDENTIAL)
        write_json(tmp_path / "broken.json", {"client_id": "only"})
        (tmp_path / "garbage.json").write_text("{not json", encoding="utf-8")
        write_json(tmp_path / "list.json", [1, 2])
        (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

        seeds = load_credentials_dir(tmp_path)

        assert [s.credential_id for s in seeds] == ["a", "b"]
        assert seeds[0].source_path == tmp_path / "a.json"

    def test_state_file_is_excluded(self, tmp_path: Path) -> None:
        write_json(tmp_path / "a.json", CREDENTIAL)
        write_json(tmp_path / "creds_state.json", {"a": {"success_count": 1}})
        seeds = load_credentials_dir(tmp_path, exclude=[tmp_path / "creds_state.json"])
        assert [s.credential_id for s in seeds] == ["a"]

    def test_missing_directory_is_created(self, tmp_path: Path) -> None:
        target = tmp_path / "creds"
        assert load_credentials_dir(target) == []
        assert target.is_dir()


class TestJsonFileStateStore:
    def test_round_trip(self, tmp_path: Path) -> None:
        store = JsonFileStateStore(tmp_path / "state" / "creds_state.json")
        until = datetime(2025, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=5)
        store.save(
            {
                "a": PersistedStatus(success_count=3, status=CredentialStatus.DISABLED),
                "b": PersistedStatus(status=CredentialStatus.COOLDOWN, cooldown_until=until),
            }
        )

        loaded = store.load()

        assert loaded["a"].success_count == 3
        assert loaded["a"].status is CredentialStatus.DISABLED
        assert loaded["b"].cooldown_until == until
        raw = json.loads(store.path.read_text(encoding="utf-8"))
        assert raw["a"]["status"] == "disabled"

    def test_no_temporary_files_left(self, tmp_path: Path) -> None:
        store = JsonFileStateStore(tmp_path / "creds_state.json")
        store.save({"a": PersistedStatus()})
        store.save({"a": PersistedStatus(success_count=2)})
        assert os.listdir(tmp_path) == ["creds_state.json"]

    def test_missing_file(self, tmp_path: Path) -> None:
        assert JsonFileStateStore(tmp_path / "nope.json").load() == {}

    def test_corrupt_file(self, tmp_path: Path) -> None:
        path = tmp_path / "creds_state.json"
        path.write_text("{oops", encoding="utf-8")
        assert JsonFileStateStore(path).load() == {}

    def test_invalid_entry_is_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "creds_state.json"
        write_json(path, {"a": {"status": "exploded"}, "b": {"error_count": 4}})
        loaded = JsonFileStateStore(path).load()
        assert list(loaded) == ["b"]
        assert loaded["b"].error_count == 4
