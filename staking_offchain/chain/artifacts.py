"""
Hardhat compilation artifacts: ABI, bytecode and build-info lookup
"""

import glob
import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..errors import ConfigurationError


# Contracts the protocol talks to but does not compile itself
BUILTIN_ABIS: Dict[str, List[Dict[str, Any]]] = {
    "DepositContract": [
        {
            "inputs": [],
            "name": "get_deposit_root",
            "outputs": [{"internalType": "bytes32", "name": "", "type": "bytes32"}],
            "stateMutability": "view",
            "type": "function"
        }
    ],
}


@dataclass
class Artifact:
    contract_name: str
    source_name: str
    abi: List[Dict[str, Any]]
    bytecode: str
    path: str

    @property
    def fully_qualified_name(self) -> str:
        return f"{self.source_name}:{self.contract_name}"

    def constructor_input_types(self) -> List[str]:
        for entry in self.abi:
            if entry.get('type') == 'constructor':
                return [_abi_type(i) for i in entry.get('inputs', [])]
        return []

    def build_info(self) -> Dict[str, Any]:
        """Load the build-info file referenced by the artifact's .dbg.json"""
        dbg_path = self.path[:-len(".json")] + ".dbg.json"
        try:
            with open(dbg_path, 'r') as f:
                dbg = json.load(f)
            build_info_path = os.path.normpath(os.path.join(os.path.dirname(dbg_path), dbg['buildInfo']))
            with open(build_info_path, 'r') as f:
                return json.load(f)
        except (OSError, KeyError, ValueError) as e:
            raise ConfigurationError(f"No build info for {self.contract_name}: {e}")


def _abi_type(param: Dict[str, Any]) -> str:
    """Canonical ABI type string, expanding tuples for eth_abi"""
    abi_type = param['type']
    if abi_type.startswith('tuple'):
        inner = ",".join(_abi_type(c) for c in param.get('components', []))
        return f"({inner}){abi_type[len('tuple'):]}"
    return abi_type


class ArtifactStore:
    """Finds artifacts by contract name anywhere under the artifacts directory"""

    def __init__(self, artifacts_dir: str):
        self.artifacts_dir = artifacts_dir
        self._cache: Dict[str, Artifact] = {}

    def _find(self, name: str) -> Optional[str]:
        pattern = os.path.join(self.artifacts_dir, "**", f"{name}.json")
        matches = [
            p for p in glob.glob(pattern, recursive=True)
            if not p.endswith(".dbg.json") and os.sep + "build-info" + os.sep not in p
        ]
        if len(matches) > 1:
            raise ConfigurationError(f"Artifact name {name} is ambiguous: {sorted(matches)}")
        return matches[0] if matches else None

    def load(self, name: str) -> Artifact:
        if name in self._cache:
            return self._cache[name]
        path = self._find(name)
        if path is None:
            raise ConfigurationError(f"No artifact for {name} under {self.artifacts_dir}")
        with open(path, 'r') as f:
            data = json.load(f)
        artifact = Artifact(
            contract_name=data.get('contractName', name),
            source_name=data.get('sourceName', ''),
            abi=data['abi'],
            bytecode=data.get('bytecode', '0x'),
            path=path,
        )
        self._cache[name] = artifact
        return artifact

    def abi(self, name: str) -> List[Dict[str, Any]]:
        if name in BUILTIN_ABIS and self._find(name) is None:
            return BUILTIN_ABIS[name]
        return self.load(name).abi
