"""Read-only catalog of OpenStack customer keys.

OpenStack project names are namespaced as ``<customer-key>-<project>``; the
catalog lets the resolver strip that prefix back off.
"""

from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pandas as pd

from .utils import get_logger


class CustomerCatalog:
    """Known customer keys and their display labels."""

    def __init__(self, customers: Optional[Dict[str, str]] = None):
        self.logger = get_logger("customer_catalog")
        self.customers: Dict[str, str] = dict(customers or {})
        # Longest key first so "cerit-sc" wins over "cerit".
        self._keys: List[str] = sorted(self.customers, key=len, reverse=True)

    @classmethod
    def from_keys(cls, keys: Iterable[str]) -> "CustomerCatalog":
        return cls({key: key for key in keys})

    @classmethod
    def from_csv(cls, path: Optional[str]) -> "CustomerCatalog":
        """Load the two-column ``key,label`` CSV (header row required).

        A missing path yields an empty catalog, which turns prefix stripping
        into a no-op.
        """
        logger = get_logger("customer_catalog")
        if not path or not Path(path).exists():
            logger.warning("Customer catalog not found, prefix stripping disabled", path=path)
            return cls()

        df = pd.read_csv(path, dtype=str, encoding="utf-8-sig", skipinitialspace=True)
        if df.empty:
            return cls()

        keys = df.iloc[:, 0].str.strip()
        if df.shape[1] > 1:
            labels = df.iloc[:, 1].str.strip().fillna(keys)
        else:
            labels = keys

        customers = {
            key: label
            for key, label in zip(keys, labels)
            if isinstance(key, str) and key
        }
        logger.info("Loaded customer catalog", path=str(path), customers=len(customers))
        return cls(customers)

    @property
    def keys(self) -> List[str]:
        return list(self._keys)

    def label(self, key: str) -> Optional[str]:
        return self.customers.get(key)

    def match_prefix(self, name: str) -> Optional[str]:
        """Longest customer key ``k`` such that ``name`` starts with ``k-``."""
        for key in self._keys:
            if name.startswith(f"{key}-"):
                return key
        return None

    def strip_prefix(self, name: Optional[str]) -> Optional[str]:
        """Remove the longest known ``<key>-`` prefix; unchanged when none applies."""
        if not name:
            return name
        key = self.match_prefix(name)
        if key is None:
            return name
        return name[len(key) + 1:]

    def __len__(self) -> int:
        return len(self.customers)
