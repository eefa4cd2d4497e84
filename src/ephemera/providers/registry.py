"""Реестр провайдеров VM и проверка их доступности.

Реестр создаётся явно точкой входа (CLI или сервером) и передаётся в сервисы,
вместо глобального словаря, заполняемого при импорте модулей.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING

from ephemera.exceptions import ConfigurationError
from ephemera.models.vm import LOCAL_NAME
from ephemera.providers.base import VMProvider

if TYPE_CHECKING:
    from ephemera.config import Settings
    from ephemera.providers.gce import GCEProvider
    from ephemera.providers.local import LocalProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Упорядоченное отображение имя провайдера → провайдер."""

    def __init__(self, providers: Iterable[VMProvider] = ()) -> None:
        self._providers: dict[str, VMProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: VMProvider) -> None:
        if provider.name in self._providers:
            raise ConfigurationError(f"provider {provider.name!r} is already registered")
        self._providers[provider.name] = provider

    def get(self, name: str) -> VMProvider:
        """Вернуть провайдер по имени.

        Raises:
            ConfigurationError: Если провайдер не зарегистрирован.
        """
        try:
            return self._providers[name]
        except KeyError:
            raise ConfigurationError(
                f"unknown VM provider {name!r} (available: {', '.join(self.names()) or 'none'})"
            ) from None

    def resolve(self, names: Iterable[str]) -> list[VMProvider]:
        """Вернуть провайдеры в порядке ``names``."""
        return [self.get(name) for name in names]

    def names(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __iter__(self) -> Iterator[VMProvider]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)


def probe_gce(settings: Settings) -> GCEProvider | None:
    """Вернуть GCE-провайдер, если CLI ``gcloud`` доступен в PATH."""
    from ephemera.providers.gce import GCEProvider

    gcloud = shutil.which("gcloud")
    if gcloud is None:
        logger.warning(
            "gcloud не найден в PATH, провайдер gce отключён "
            "(установка: https://cloud.google.com/sdk/downloads)"
        )
        return None
    return GCEProvider.from_settings(settings, gcloud_path=gcloud)


def probe_local(settings: Settings) -> LocalProvider:
    """Локальный провайдер доступен всегда."""
    from ephemera.providers.local import LocalProvider

    return LocalProvider(settings.local_state_path)


def build_registry(settings: Settings) -> ProviderRegistry:
    """Собрать реестр из провайдеров, перечисленных в ``settings.providers``.

    Недоступные провайдеры (например, без ``gcloud``) пропускаются с
    предупреждением; неизвестные имена — ошибка конфигурации.
    """
    probes = {
        "gce": probe_gce,
        LOCAL_NAME: probe_local,
    }

    registry = ProviderRegistry()
    for name in settings.providers:
        probe = probes.get(name)
        if probe is None:
            raise ConfigurationError(
                f"unknown VM provider {name!r} in EPHEMERA_PROVIDERS "
                f"(supported: {', '.join(probes)})"
            )
        provider = probe(settings)
        if provider is not None:
            registry.register(provider)

    logger.debug("Зарегистрированы провайдеры: %s", registry.names())
    return registry
