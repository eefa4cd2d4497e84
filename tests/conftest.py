"""Общие фабрики и фикстуры для тестов ephemera."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from ephemera.models.cluster import CloudCluster
from ephemera.models.vm import VM, CreateOpts, sort_vms

# Фиксированный «сейчас» для детерминированной арифметики времени
NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_vm(**overrides) -> VM:
    """Фабрика VM с разумными дефолтами."""
    defaults: dict = {
        "name": "alice-test-0001",
        "provider": "gce",
        "provider_id": "alice-test-0001",
        "created_at": NOW - timedelta(hours=2),
        "lifetime": timedelta(hours=12),
        "dns": "alice-test-0001.us-east1-b.ephemeral-clusters",
        "private_ip": "10.0.0.2",
        "public_ip": "35.1.2.3",
        "remote_user": "alice",
        "zone": "us-east1-b",
    }
    defaults.update(overrides)
    return VM.model_validate(defaults)


def make_cluster(**overrides) -> CloudCluster:
    """Фабрика CloudCluster; по умолчанию два узла gce."""
    defaults: dict = {
        "name": "alice-test",
        "user": "alice",
        "created_at": NOW - timedelta(hours=2),
        "lifetime": timedelta(hours=12),
        "vms": [
            make_vm(name="alice-test-0001"),
            make_vm(name="alice-test-0002"),
        ],
    }
    defaults.update(overrides)
    return CloudCluster.model_validate(defaults)


class FakeProvider:
    """Провайдер в памяти, реализующий протокол VMProvider.

    ``failures`` — исключения по имени операции; ``delay`` — пауза перед
    выполнением любой операции, чтобы проверять параллельность.
    """

    def __init__(
        self,
        name: str,
        vms: list[VM] | None = None,
        *,
        failures: dict[str, BaseException] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.vms: list[VM] = list(vms or [])
        self.failures = dict(failures or {})
        self.delay = delay
        self.calls: list[tuple[str, object]] = []
        self.completed: list[str] = []

    async def _step(self, operation: str, payload: object) -> None:
        self.calls.append((operation, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        error = self.failures.get(operation)
        if error is not None:
            raise error

    async def list_vms(self) -> list[VM]:
        await self._step("list", None)
        self.completed.append("list")
        return list(self.vms)

    async def create(self, names: list[str], opts: CreateOpts) -> None:
        await self._step("create", list(names))
        self.vms.extend(
            make_vm(
                name=name,
                provider=self.name,
                provider_id=name,
                created_at=NOW,
                lifetime=opts.lifetime,
            )
            for name in names
        )
        self.vms = sort_vms(self.vms)
        self.completed.append("create")

    async def delete(self, vms: list[VM]) -> None:
        await self._step("delete", [vm.name for vm in vms])
        doomed = {vm.name for vm in vms}
        self.vms = [vm for vm in self.vms if vm.name not in doomed]
        self.completed.append("delete")

    async def extend(self, vms: list[VM], lifetime: timedelta) -> None:
        await self._step("extend", ([vm.name for vm in vms], lifetime))
        targets = {vm.name for vm in vms}
        self.vms = [
            vm.model_copy(update={"lifetime": lifetime}) if vm.name in targets else vm
            for vm in self.vms
        ]
        self.completed.append("extend")

    def operations(self) -> list[str]:
        return [operation for operation, _ in self.calls]
