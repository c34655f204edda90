"""Crime definitions available to heists."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import yaml

from .errors import NotFoundError
from .models import CrimeDefinition
from .rng import DeterministicRNG

_DATA_PATH = Path(__file__).parent / "data"


class CrimeCatalog:
    """Loads crime definitions from ``crimes.yaml`` and matches chat input to them."""

    def __init__(self, data_path: Path | None = None) -> None:
        self._path = data_path or _DATA_PATH
        data = self._load_yaml("crimes.yaml")
        self._crimes: Dict[str, CrimeDefinition] = {}
        for entry in data.get("crimes", []):
            crime = CrimeDefinition(
                id=str(entry["id"]),
                name=str(entry.get("name", entry["id"])),
                difficulty=str(entry.get("difficulty", "medium")),
                base_probability=float(entry["base_probability"]),
                payout_min=int(entry["payout_min"]),
                payout_max=int(entry["payout_max"]),
                aliases=[str(alias).lower() for alias in entry.get("aliases", [])],
            )
            self._crimes[crime.id] = crime

    @classmethod
    def from_definitions(cls, crimes: Sequence[CrimeDefinition]) -> "CrimeCatalog":
        catalog = cls.__new__(cls)
        catalog._path = None
        catalog._crimes = {crime.id: crime for crime in crimes}
        return catalog

    def _load_yaml(self, name: str) -> Dict:
        with (self._path / name).open("r", encoding="utf-8") as fh:
            return yaml.safe_load(fh) or {}

    def all(self) -> List[CrimeDefinition]:
        return list(self._crimes.values())

    def ids(self) -> List[str]:
        return list(self._crimes)

    def get(self, crime_id: str) -> CrimeDefinition:
        try:
            return self._crimes[crime_id]
        except KeyError:
            raise NotFoundError(f"Unknown crime '{crime_id}'") from None

    def sample(self, rng: DeterministicRNG, count: int) -> List[CrimeDefinition]:
        """Pick ``count`` distinct crimes, or all of them when fewer exist."""

        crimes = self.all()
        if count >= len(crimes):
            return crimes
        return rng.sample(crimes, count)

    def match(self, text: str, offered: Optional[Sequence[str]] = None) -> Optional[str]:
        """Resolve chat input (id, name, alias or 1-based position) to a crime id."""

        needle = text.strip().lower()
        if not needle:
            return None
        candidates = list(offered) if offered is not None else self.ids()
        if needle.isdigit():
            index = int(needle) - 1
            if 0 <= index < len(candidates):
                return candidates[index]
            return None
        for crime_id in candidates:
            crime = self._crimes.get(crime_id)
            if crime is None:
                if crime_id.lower() == needle:
                    return crime_id
                continue
            if needle in (crime.id.lower(), crime.name.lower()) or needle in crime.aliases:
                return crime.id
        # fall back to a whole-word mention inside a chat line
        for crime_id in candidates:
            crime = self._crimes.get(crime_id)
            if crime is None:
                continue
            for term in (crime.id, crime.name, *crime.aliases):
                if re.search(rf"\b{re.escape(term.lower())}\b", needle):
                    return crime.id
        return None


__all__ = ["CrimeCatalog"]
