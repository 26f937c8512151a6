"""
Identity Source — loads the sender/recipient identities produced by the
provisioning step.

Feed format (CSV with header, or a JSON list of objects):
    index,address,display_name,credential

A credential equal to the sentinel (config.IDENTITY_SENTINEL) or empty marks
an identity whose provisioning failed. Those are dropped before any work is
generated; they can neither send nor receive.
"""

import csv
import json
import logging
import os
from typing import Dict, Iterable, List, Optional

import config
from engine.errors import CampaignConfigError
from engine.models import Identity

logger = logging.getLogger("mailfill.identities")


def _parse_row(row: Dict, position: int) -> Identity:
    address = (row.get("address") or row.get("email") or "").strip()
    name = (row.get("display_name") or row.get("name") or "").strip()
    raw_index = row.get("index")
    index = int(raw_index) if raw_index not in (None, "") else position
    credential = row.get("credential")
    if credential is None:
        credential = row.get("password", "")
    return Identity(
        index=index,
        address=address,
        display_name=name or address.split("@")[0],
        credential=str(credential).strip(),
    )


def read_identity_feed(path: str) -> List[Identity]:
    """Read every record of the feed, sentinel rows included, ordered by index."""
    if not path or not os.path.isfile(path):
        raise CampaignConfigError(f"Identity feed not found: {path}")

    with open(path, encoding="utf-8") as f:
        if path.lower().endswith(".json"):
            try:
                rows = json.load(f)
            except json.JSONDecodeError as e:
                raise CampaignConfigError(f"Identity feed {path} is not valid JSON: {e}") from e
        else:
            rows = list(csv.DictReader(f))

    identities = []
    for position, row in enumerate(rows):
        identity = _parse_row(row, position)
        if not identity.address or "@" not in identity.address:
            logger.warning(f"identity_row_skipped: row {position} has no usable address")
            continue
        identities.append(identity)

    identities.sort(key=lambda i: i.index)
    return identities


def filter_eligible(
    identities: Iterable[Identity],
    sentinel: str = None,
    excluded: Iterable[str] = (),
) -> List[Identity]:
    """Drop identities marked with the sentinel or listed in `excluded`."""
    sentinel = config.IDENTITY_SENTINEL if sentinel is None else sentinel
    excluded = {e.lower() for e in excluded}
    eligible = []
    dropped = 0
    for identity in identities:
        if not identity.credential or identity.credential == sentinel:
            dropped += 1
            continue
        if identity.address.lower() in excluded:
            dropped += 1
            continue
        eligible.append(identity)

    if dropped:
        logger.info("identities_filtered", extra={"eligible": len(eligible), "dropped": dropped})
    return eligible


def load_identities(path: str = None, sentinel: str = None, excluded: Iterable[str] = ()) -> List[Identity]:
    """
    Load the feed and return the identities usable by the campaign.

    Raises CampaignConfigError if the feed is missing or has fewer than two
    eligible identities (nobody to send to).
    """
    path = path or config.IDENTITY_FILE
    eligible = filter_eligible(read_identity_feed(path), sentinel=sentinel, excluded=excluded)
    if len(eligible) < 2:
        raise CampaignConfigError(
            f"Identity feed {path} has {len(eligible)} eligible identities, need at least 2"
        )
    logger.info(f"identities_loaded: {len(eligible)} eligible from {path}")
    return eligible


class IdentityDirectory:
    """Address lookup over the eligible identities (read-only during the run)."""

    def __init__(self, identities: List[Identity]):
        self.identities = list(identities)
        self._by_address = {i.address.lower(): i for i in self.identities}

    def __len__(self) -> int:
        return len(self.identities)

    def get(self, address: str) -> Optional[Identity]:
        return self._by_address.get((address or "").lower())

    def can_send(self, address: str) -> bool:
        identity = self.get(address)
        return identity is not None and bool(identity.credential)

    def without(self, excluded: Iterable[str]) -> "IdentityDirectory":
        """A new directory minus `excluded` addresses."""
        excluded = {e.lower() for e in excluded}
        return IdentityDirectory([i for i in self.identities if i.address.lower() not in excluded])
