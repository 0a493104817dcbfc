"""
Flat name -> address registry backed by a JSON file

Every read goes to disk so long running processes never act on a stale copy;
every write replaces the whole file atomically.
"""

import json
import logging
import os
import tempfile
from typing import Dict, Optional

from .errors import RegistryError
from .models import ProxyUpgradeRecord

logger = logging.getLogger(__name__)


def registry_key(contract_name: str) -> str:
    """Registry key for a contract name: first letter lower-cased"""
    if not contract_name:
        raise ValueError("contract name must not be empty")
    return contract_name[0].lower() + contract_name[1:]


class AddressRegistry:
    def __init__(self, path: str):
        self.path = path

    @property
    def audit_path(self) -> str:
        root, _ = os.path.splitext(self.path)
        return f"{root}.upgrades.jsonl"

    def read(self) -> Dict[str, str]:
        """Return a fresh copy of the mapping; a missing file is an empty registry"""
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise RegistryError(f"Could not read address registry {self.path}: {e}")
        if not isinstance(data, dict):
            raise RegistryError(f"Address registry {self.path} must contain a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    def replace(self, mapping: Dict[str, str]) -> None:
        """Atomically replace the registry contents"""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".registry-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(mapping, f, indent=2, sort_keys=True)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise RegistryError(f"Could not write address registry {self.path}: {e}")

    def get(self, name: str) -> Optional[str]:
        return self.read().get(registry_key(name))

    def require(self, name: str) -> str:
        address = self.get(name)
        if not address:
            raise RegistryError(f"No contract found with name {name} in {self.path}")
        return address

    def update(self, name: str, address: str) -> None:
        mapping = self.read()
        key = registry_key(name)
        previous = mapping.get(key)
        mapping[key] = address
        self.replace(mapping)
        if previous and previous != address:
            logger.info(f"Registry: {key} {previous} -> {address}")
        else:
            logger.info(f"Registry: {key} = {address}")

    def append_upgrade(self, record: ProxyUpgradeRecord) -> None:
        """Append an upgrade to the audit log next to the registry"""
        try:
            with open(self.audit_path, 'a') as f:
                f.write(json.dumps(record.to_dict(), default=str) + "\n")
        except OSError as e:
            raise RegistryError(f"Could not append to upgrade log {self.audit_path}: {e}")
