from __future__ import annotations

from typing import Iterable

from .backend import BackendClient
from .errors import NotFoundError
from .refunds import ref_id
from .security import Session


def filter_packages(
    packages: Iterable[dict],
    search: str = "",
    type: str = "all",
    category: str = "all",
    status: str = "all",
) -> list[dict]:
    term = (search or "").strip().lower()
    out = []
    for p in packages:
        if term and term not in str(p.get("title") or "").lower():
            continue
        if type != "all" and p.get("type") != type:
            continue
        if category != "all" and p.get("category") != category:
            continue
        if status == "active" and not p.get("isActive"):
            continue
        if status == "inactive" and p.get("isActive"):
            continue
        out.append(p)
    return out


def package_counts(packages: Iterable[dict]) -> dict[str, int]:
    packages = list(packages)
    return {
        "total": len(packages),
        "group": sum(1 for p in packages if p.get("type") == "GROUP"),
        "active": sum(1 for p in packages if p.get("isActive")),
    }


class PackageService:
    def __init__(self, backend: BackendClient):
        self.backend = backend

    async def list(self, session: Session, **filters) -> list[dict]:
        return filter_packages(await self.backend.list_packages(session), **filters)

    async def toggle_active(self, session: Session, package_id: str) -> dict:
        for p in await self.backend.list_packages(session):
            if ref_id(p) == package_id:
                return await self.backend.update_package(session, package_id, {"isActive": not bool(p.get("isActive"))})
        raise NotFoundError(f"Package {package_id} not found")
