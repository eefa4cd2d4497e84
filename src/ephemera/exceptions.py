"""Иерархия исключений пакета ephemera."""

from __future__ import annotations


class EphemeraError(Exception):
    """Базовое исключение для всех ошибок ephemera."""


class ConfigurationError(EphemeraError):
    """Отсутствующая или некорректная конфигурация."""


class NoProvidersError(ConfigurationError):
    """Создание кластера запрошено без единого настроенного провайдера."""

    def __init__(self) -> None:
        super().__init__("no VM providers configured")


class InvalidNameError(EphemeraError, ValueError):
    """Имя VM не соответствует соглашению ``user-<clusterid>-<nodeid>``."""


class ClusterNotFoundError(EphemeraError):
    """Кластер с указанным именем отсутствует в снимке инвентаря."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"cluster {name!r} not found")


class ProviderError(EphemeraError):
    """Ошибка вызова облачного провайдера (list/create/delete/extend)."""

    def __init__(self, provider: str, operation: str, message: str) -> None:
        self.provider = provider
        self.operation = operation
        super().__init__(f"{provider}: {operation} failed: {message}")


class FanOutError(EphemeraError):
    """Одна или несколько задач параллельного fan-out завершились ошибкой.

    Хранит ошибки всех упавших провайдеров в порядке запуска задач.
    """

    def __init__(self, errors: list[ProviderError]) -> None:
        if not errors:
            raise ValueError("FanOutError requires at least one error")
        self.errors = list(errors)
        if len(self.errors) == 1:
            message = str(self.errors[0])
        else:
            message = f"{len(self.errors)} providers failed: " + "; ".join(
                str(e) for e in self.errors
            )
        super().__init__(message)

    @property
    def first(self) -> ProviderError:
        """Первая ошибка в порядке запуска задач."""
        return self.errors[0]
