"""
Loading of credential seed files.

Each ``*.json`` file in the credentials directory holds one OAuth credential,
either in the gemini-cli layout (``token``) or the plain one
(``access_token``). The credential id is the file stem.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from gcli_gateway.core.domain.credentials import CredentialSeed

logger = logging.getLogger(__name__)


def parse_expiry(value: Any) -> datetime | None:
    """Parse an RFC3339 timestamp into an aware UTC datetime.

    Returns None for missing or unparsable values, which callers treat as
    already expired.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning("Unparsable credential expiry %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_credential(credential_id: str, data: dict[str, Any], source_path: Path | None = None) -> CredentialSeed:
    """Build a seed from the JSON content of one credential file.

    Raises:
        ValueError: If a required field is missing
    """
    refresh_token = data.get("refresh_token")
    if not refresh_token:
        raise ValueError("missing refresh_token")
    client_id = data.get("client_id")
    client_secret = data.get("client_secret")
    if not client_id or not client_secret:
        raise ValueError("missing client_id or client_secret")

    scopes: tuple[str, ...] = ()
    if isinstance(data.get("scopes"), list):
        scopes = tuple(str(s) for s in data["scopes"])
    elif isinstance(data.get("scope"), str):
        scopes = tuple(data["scope"].split())

    return CredentialSeed(
        credential_id=credential_id,
        access_token=data.get("token") or data.get("access_token") or "",
        refresh_token=refresh_token,
        client_id=client_id,
        client_secret=client_secret,
        project_id=data.get("project_id") or "",
        expiry=parse_expiry(data.get("expiry")),
        scopes=scopes,
        source_path=source_path,
    )


def load_credentials_dir(
    credentials_dir: str | Path, exclude: Iterable[str | Path] = ()
) -> list[CredentialSeed]:
    """Load every credential file in ``credentials_dir``, sorted by file name.

    Files that cannot be parsed or lack required fields are skipped with a
    warning. The directory is created when missing.

    Args:
        credentials_dir: Directory containing ``*.json`` credential files
        exclude: Paths inside the directory that are not credentials (the
            state file, for instance)
    """
    directory = Path(credentials_dir)
    directory.mkdir(parents=True, exist_ok=True)
    excluded = {Path(p).resolve() for p in exclude}

    seeds: list[CredentialSeed] = []
    for path in sorted(directory.glob("*.json"), key=lambda p: p.name):
        if path.resolve() in excluded:
            continue
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("not a JSON object")
            seed = parse_credential(path.stem, data, source_path=path)
        except (OSError, ValueError) as exc:
            logger.warning("Skipping credential file %s: %s", path.name, exc)
            continue
        seeds.append(seed)

    if not seeds:
        logger.warning("No credential files found in %s", directory)
    else:
        logger.info("Loaded %d credential files from %s", len(seeds), directory)
    return seeds
