"""Сервис инвентаризации: опрос провайдеров и сборка кластеров из VM."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ephemera.exceptions import ClusterNotFoundError, InvalidNameError, ProviderError
from ephemera.models.cluster import Cloud, CloudCluster
from ephemera.models.vm import VM, VMError, VMErrorKind, sort_vms
from ephemera.providers.registry import ProviderRegistry
from ephemera.utils.naming import names_from_vm

logger = logging.getLogger(__name__)


@dataclass
class _ClusterAccumulator:
    """Промежуточное состояние кластера, пока VM ещё добавляются."""

    name: str
    user: str
    created_at: datetime
    lifetime: timedelta
    vms: list[VM] = field(default_factory=list)

    def add(self, vm: VM) -> None:
        # created_at и lifetime: минимумы по всем VM кластера
        self.vms.append(vm)
        if vm.created_at < self.created_at:
            self.created_at = vm.created_at
        if vm.lifetime < self.lifetime:
            self.lifetime = vm.lifetime

    def build(self) -> CloudCluster:
        return CloudCluster(
            name=self.name,
            user=self.user,
            created_at=self.created_at,
            lifetime=self.lifetime,
            vms=sort_vms(self.vms),
        )


class InventoryService:
    """Строит снимок инвентаря (:class:`Cloud`) по всем зарегистрированным провайдерам.

    Каждая VM оказывается ровно в одном месте: либо в одном кластере, либо в
    ``bad_instances``. Ошибка листинга любого провайдера прерывает сборку
    целиком.
    """

    def __init__(self, registry: ProviderRegistry) -> None:
        self._registry = registry

    async def list_cloud(self) -> Cloud:
        """Опросить провайдеров и сгруппировать VM в кластеры.

        Raises:
            ProviderError: Если листинг хотя бы одного провайдера упал.
        """
        clusters: dict[str, _ClusterAccumulator] = {}
        bad_instances: list[VM] = []

        for provider in self._registry:
            try:
                vms = await provider.list_vms()
            except ProviderError:
                raise
            except Exception as exc:
                raise ProviderError(provider.name, "list", str(exc)) from exc

            logger.debug("Провайдер %s: %d VM", provider.name, len(vms))

            for vm in vms:
                try:
                    user, cluster_name = names_from_vm(vm)
                except InvalidNameError as exc:
                    vm = vm.with_error(VMError(kind=VMErrorKind.INVALID_NAME, message=str(exc)))

                # VM с ошибками провайдера или разбора имени идут в bad_instances
                if vm.errors:
                    bad_instances.append(vm)
                    continue

                acc = clusters.get(cluster_name)
                if acc is None:
                    acc = clusters[cluster_name] = _ClusterAccumulator(
                        name=cluster_name,
                        user=user,
                        created_at=vm.created_at,
                        lifetime=vm.lifetime,
                    )
                acc.add(vm)

        cloud = Cloud(
            clusters={name: acc.build() for name, acc in clusters.items()},
            bad_instances=sort_vms(bad_instances),
        )
        logger.info(
            "Инвентарь: %d кластеров, %d VM с ошибками (провайдеры: %s)",
            len(cloud.clusters),
            len(cloud.bad_instances),
            ", ".join(self._registry.names()) or "нет",
        )
        return cloud


def find_cluster(cloud: Cloud, name: str) -> CloudCluster:
    """Найти кластер в снимке по имени.

    Raises:
        ClusterNotFoundError: Если кластера нет.
    """
    try:
        return cloud.clusters[name]
    except KeyError:
        raise ClusterNotFoundError(name) from None

