"""Локальный псевдо-провайдер: «VM» — процессы на этой машине, учёт в YAML-файле."""

from __future__ import annotations

import getpass
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

import yaml
from pydantic import TypeAdapter, ValidationError

from ephemera.exceptions import ProviderError
from ephemera.models.vm import LOCAL_NAME, VM, CreateOpts

logger = logging.getLogger(__name__)

_VMS = TypeAdapter(list[VM])


class LocalProvider:
    """Реализует :class:`~ephemera.providers.base.VMProvider` для локального кластера.

    Состояние хранится в YAML-файле списком записей VM. Локальный кластер
    не имеет срока жизни, поэтому ``extend`` ничего не меняет.
    """

    name = LOCAL_NAME

    def __init__(self, state_path: str | Path) -> None:
        self._path = Path(state_path)

    @property
    def state_path(self) -> Path:
        return self._path

    async def list_vms(self) -> list[VM]:
        return self._load()

    async def create(self, names: list[str], opts: CreateOpts) -> None:
        if not names:
            return
        vms = self._load()
        existing = {vm.name for vm in vms}
        duplicates = sorted(existing.intersection(names))
        if duplicates:
            raise ProviderError(self.name, "create", f"VMs already exist: {', '.join(duplicates)}")

        now = datetime.now(timezone.utc)
        user = getpass.getuser()
        for name in names:
            vms.append(VM(
                name=name,
                provider=self.name,
                provider_id=name,
                created_at=now,
                lifetime=timedelta(0),
                dns="localhost",
                private_ip="127.0.0.1",
                public_ip="127.0.0.1",
                remote_user=user,
            ))
        self._save(vms)
        logger.info("local: создано %d VM", len(names))

    async def delete(self, vms: list[VM]) -> None:
        foreign = [vm.name for vm in vms if vm.provider != self.name]
        if foreign:
            raise ProviderError(
                self.name, "delete", f"received VMs from other providers: {', '.join(foreign)}",
            )

        doomed = {vm.name for vm in vms}
        current = self._load()
        kept = [vm for vm in current if vm.name not in doomed]
        self._save(kept)
        logger.info("local: удалено %d VM", len(current) - len(kept))

    async def extend(self, vms: list[VM], lifetime: timedelta) -> None:
        logger.debug("local: кластер без срока жизни, extend для %d VM пропущен", len(vms))

    def _load(self) -> list[VM]:
        if not self._path.exists():
            return []
        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ProviderError(self.name, "list", f"cannot read {self._path}: {exc}") from exc

        if raw is None:
            return []
        try:
            return _VMS.validate_python(raw)
        except ValidationError as exc:
            raise ProviderError(self.name, "list", f"invalid state file {self._path}: {exc}") from exc

    def _save(self, vms: list[VM]) -> None:
        payload = _VMS.dump_python(vms, mode="json")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                yaml.safe_dump(payload, sort_keys=False, allow_unicode=True),
                encoding="utf-8",
            )
        except OSError as exc:
            raise ProviderError(self.name, "save", f"cannot write {self._path}: {exc}") from exc
