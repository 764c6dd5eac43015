import asyncio
import logging
from typing import Any, Dict, List, Tuple
from urllib.parse import quote

import httpx

from .errors import MoleculeLookupFailure
from .schemas import Atom, Bond, MoleculeData

logger = logging.getLogger("uvicorn.error")

PROPERTY_FIELDS = "MolecularFormula,MolecularWeight,IUPACName"


def parse_sdf(sdf: str) -> Tuple[List[Atom], List[Bond]]:
    """Atoms and bonds from a V2000 molfile block (first record only)."""
    lines = sdf.splitlines()
    if len(lines) < 4:
        raise ValueError("SDF record is too short")
    counts = lines[3]
    atom_count = int(counts[0:3])
    bond_count = int(counts[3:6])
    atoms: List[Atom] = []
    for line in lines[4 : 4 + atom_count]:
        atoms.append(
            Atom(
                x=float(line[0:10]),
                y=float(line[10:20]),
                z=float(line[20:30]),
                element=line[31:34].strip(),
            )
        )
    bonds: List[Bond] = []
    start = 4 + atom_count
    for line in lines[start : start + bond_count]:
        bonds.append(
            Bond(
                source=int(line[0:3]) - 1,
                target=int(line[3:6]) - 1,
                order=int(line[6:9]),
            )
        )
    if len(atoms) != atom_count or len(bonds) != bond_count:
        raise ValueError("SDF record is truncated")
    return atoms, bonds


class PubChemClient:
    def __init__(self, base_url: str = "https://pubchem.ncbi.nlm.nih.gov/rest/pug", timeout: float = 20.0):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout)

    async def _cid(self, name: str) -> int:
        url = f"{self.base_url}/compound/name/{quote(name)}/cids/JSON"
        resp = await self.client.get(url)
        if resp.status_code == 404:
            raise MoleculeLookupFailure(name, f"compound not found: {name}")
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError as exc:
            raise MoleculeLookupFailure(name, "PubChem returned an unreadable identifier response") from exc
        cids = ((data.get("IdentifierList") or {}).get("CID") or []) if isinstance(data, dict) else []
        if not cids:
            raise MoleculeLookupFailure(name, f"compound not found: {name}")
        return int(cids[0])

    async def _sdf(self, name: str, cid: int) -> str:
        resp = await self.client.get(f"{self.base_url}/compound/cid/{cid}/SDF", params={"record_type": "3d"})
        if resp.status_code == 404:
            raise MoleculeLookupFailure(name, f"no 3D structure for CID {cid}")
        resp.raise_for_status()
        text = resp.text
        if "V2000" not in text:
            raise MoleculeLookupFailure(name, f"unsupported structure format for CID {cid}")
        return text

    async def _properties(self, cid: int) -> Dict[str, Any]:
        url = f"{self.base_url}/compound/cid/{cid}/property/{PROPERTY_FIELDS}/JSON"
        try:
            resp = await self.client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("PubChem properties lookup failed for CID %s: %s", cid, exc)
            return {}
        try:
            data = resp.json()
        except ValueError:
            logger.warning("PubChem returned unreadable properties for CID %s", cid)
            return {}
        table = (data.get("PropertyTable") or {}) if isinstance(data, dict) else {}
        props = table.get("Properties") or [{}]
        return props[0] if props else {}

    async def get_molecule(self, name: str) -> MoleculeData:
        name = (name or "").strip()
        if not name:
            raise MoleculeLookupFailure(name, "no compound name given")
        try:
            cid = await self._cid(name)
            sdf, props = await asyncio.gather(self._sdf(name, cid), self._properties(cid))
        except httpx.HTTPError as exc:
            raise MoleculeLookupFailure(name, str(exc)) from exc
        try:
            atoms, bonds = parse_sdf(sdf)
        except ValueError as exc:
            raise MoleculeLookupFailure(name, f"could not parse structure: {exc}") from exc
        weight = props.get("MolecularWeight")
        return MoleculeData(
            name=name,
            atoms=atoms,
            bonds=bonds,
            molecular_formula=props.get("MolecularFormula"),
            molecular_weight=str(weight) if weight is not None else None,
            iupac_name=props.get("IUPACName"),
        )

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
