"""Общая логика операций над кластерами — используется и CLI, и HTTP-сервером."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta

from ephemera.exceptions import ConfigurationError
from ephemera.models.cluster import Cloud, CloudCluster
from ephemera.models.vm import CreateOpts
from ephemera.providers.gce import PROVIDER_NAME as GCE_NAME
from ephemera.providers.gce import GCEProvider
from ephemera.providers.registry import ProviderRegistry
from ephemera.services.inventory_service import InventoryService, find_cluster
from ephemera.services.lifecycle_service import LifecycleService

logger = logging.getLogger(__name__)


@dataclass
class CreateResult:
    """Результат создания кластера."""

    name: str
    nodes: int
    allocation: dict[str, list[str]] = field(default_factory=dict)


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigurationError(f"invalid cluster pattern {pattern!r}: {exc}") from exc


async def list_clusters(
    registry: ProviderRegistry,
    pattern: str | None = None,
) -> Cloud:
    """Снимок инвентаря; при заданном ``pattern`` — только кластеры, чьё имя ему соответствует.

    ``bad_instances`` не фильтруются: проблемные VM показываются всегда.
    """
    cloud = await InventoryService(registry).list_cloud()
    if not pattern:
        return cloud

    regex = _compile_pattern(pattern)
    return Cloud(
        clusters={
            name: cluster
            for name, cluster in cloud.clusters.items()
            if regex.search(name)
        },
        bad_instances=cloud.bad_instances,
    )


async def get_cluster(registry: ProviderRegistry, name: str) -> CloudCluster:
    """Найти кластер по имени в свежем снимке.

    Raises:
        ClusterNotFoundError: Если кластера нет.
    """
    cloud = await InventoryService(registry).list_cloud()
    return find_cluster(cloud, name)


async def resolve_username(registry: ProviderRegistry, configured: str = "") -> str:
    """Имя пользователя для префикса кластеров.

    Берётся из настроек, иначе из активного аккаунта gcloud; без GCE — пустое.
    """
    if configured:
        return configured
    if GCE_NAME not in registry:
        return ""

    provider = registry.get(GCE_NAME)
    if not isinstance(provider, GCEProvider):
        return ""
    return await provider.find_active_account()


def verify_cluster_name(name: str, username: str = "") -> None:
    """Проверить, что из имени кластера получатся разбираемые имена VM.

    Raises:
        ConfigurationError: Имя не вида ``user-<clusterid>`` или принадлежит
            другому пользователю.
    """
    user, _, cluster_id = name.partition("-")
    if not user or not cluster_id:
        raise ConfigurationError(
            f"cluster name {name!r} must be of the form user-<clusterid>"
        )
    if username and user != username:
        raise ConfigurationError(
            f"cluster name {name!r} must start with {username!r}-"
        )


async def create_cluster(
    registry: ProviderRegistry,
    name: str,
    nodes: int,
    opts: CreateOpts,
    *,
    username: str = "",
) -> CreateResult:
    """Создать кластер из ``nodes`` VM.

    Raises:
        ConfigurationError: Некорректное имя, число узлов или неизвестный провайдер.
        NoProvidersError: Пустой ``opts.vm_providers``.
        FanOutError: Ошибка создания у одного или нескольких провайдеров.
    """
    verify_cluster_name(name, username)
    if nodes < 1:
        raise ConfigurationError(f"cluster must have at least one node, got {nodes}")

    allocation = await LifecycleService(registry).create_cluster(name, nodes, opts)
    return CreateResult(name=name, nodes=nodes, allocation=allocation)


async def destroy_clusters(registry: ProviderRegistry, names: list[str]) -> list[str]:
    """Удалить кластеры по именам последовательно; первая ошибка прерывает удаление.

    Все имена проверяются по одному снимку до начала удаления, так что
    опечатка в имени не приводит к частичному удалению списка.

    Returns:
        Имена удалённых кластеров.
    """
    cloud = await InventoryService(registry).list_cloud()
    clusters = [find_cluster(cloud, name) for name in names]

    service = LifecycleService(registry)
    destroyed: list[str] = []
    for cluster in clusters:
        await service.destroy_cluster(cluster)
        destroyed.append(cluster.name)
        logger.info("Кластер %s удалён", cluster.name)
    return destroyed


async def extend_cluster(
    registry: ProviderRegistry,
    name: str,
    extension: timedelta,
) -> CloudCluster:
    """Продлить кластер на ``extension`` и вернуть его обновлённое состояние."""
    if extension <= timedelta(0):
        raise ConfigurationError("extension must be positive")

    cluster = await get_cluster(registry, name)
    await LifecycleService(registry).extend_cluster(cluster, extension)
    return await get_cluster(registry, name)
