"""Сервис жизненного цикла кластеров: создание, удаление, продление."""

from __future__ import annotations

import logging
from datetime import timedelta

from ephemera.exceptions import NoProvidersError
from ephemera.models.cluster import CloudCluster
from ephemera.models.vm import VM, CreateOpts
from ephemera.providers.base import VMProvider
from ephemera.providers.registry import ProviderRegistry
from ephemera.services.fanout import fan_out, providers_parallel
from ephemera.utils.durations import format_duration
from ephemera.utils.naming import vm_name

logger = logging.getLogger(__name__)


def allocate_vm_names(
    cluster_name: str,
    nodes: int,
    provider_names: list[str],
) -> dict[str, list[str]]:
    """Распределить имена узлов по провайдерам round-robin.

    Узел ``i`` (с 1) достаётся ``provider_names[(i - 1) % len(provider_names)]``.

    Raises:
        NoProvidersError: Если список провайдеров пуст.
    """
    if not provider_names:
        raise NoProvidersError()

    allocation: dict[str, list[str]] = {name: [] for name in provider_names}
    for i in range(1, nodes + 1):
        provider = provider_names[(i - 1) % len(provider_names)]
        allocation[provider].append(vm_name(cluster_name, i))
    return allocation


class LifecycleService:
    """Операции над кластерами, распределённые по провайдерам.

    Каждая операция — один fan-out: все задачи стартуют сразу и
    дожидаются друг друга; частичные результаты не откатываются и видны
    в следующем снимке инвентаря.
    """

    def __init__(self, registry: ProviderRegistry) -> None:
        self._registry = registry

    async def create_cluster(self, name: str, nodes: int, opts: CreateOpts) -> dict[str, list[str]]:
        """Создать кластер из ``nodes`` VM на провайдерах ``opts.vm_providers``.

        Returns:
            Распределение имён VM по провайдерам.

        Raises:
            NoProvidersError: Если провайдеры не заданы (ничего не запускается).
            ConfigurationError: Если провайдер не зарегистрирован.
            FanOutError: Если создание упало хотя бы у одного провайдера.
        """
        allocation = allocate_vm_names(name, nodes, opts.vm_providers)
        providers = self._registry.resolve(allocation)

        logger.info(
            "Создание кластера %s: %d VM, провайдеры %s, lifetime %s",
            name,
            nodes,
            ", ".join(allocation),
            format_duration(opts.lifetime),
        )

        async def create(provider: VMProvider) -> None:
            await provider.create(allocation[provider.name], opts)

        await providers_parallel(providers, create, operation="create")
        return allocation

    async def destroy_cluster(self, cluster: CloudCluster) -> None:
        """Удалить все VM кластера у тех провайдеров, где они есть."""
        logger.info("Удаление кластера %s (%d VM)", cluster.name, len(cluster.vms))

        async def delete(provider: VMProvider, vms: list[VM]) -> None:
            await provider.delete(vms)

        await fan_out(cluster.vms, self._registry, delete, operation="delete")

    async def extend_cluster(self, cluster: CloudCluster, extension: timedelta) -> timedelta:
        """Продлить кластер: новое время жизни = текущее + ``extension``.

        Returns:
            Новое время жизни, установленное на всех VM.
        """
        lifetime = cluster.lifetime + extension
        logger.info(
            "Продление кластера %s на %s (новый lifetime %s)",
            cluster.name,
            format_duration(extension),
            format_duration(lifetime),
        )

        async def extend(provider: VMProvider, vms: list[VM]) -> None:
            await provider.extend(vms, lifetime)

        await fan_out(cluster.vms, self._registry, extend, operation="extend")
        return lifetime
