"""Абстрактный интерфейс облачного провайдера VM."""

from __future__ import annotations

from datetime import timedelta
from typing import Protocol, runtime_checkable

from ephemera.models.vm import VM, CreateOpts


@runtime_checkable
class VMProvider(Protocol):
    """Протокол, определяющий контракт любого бэкенда VM.

    Ядро (построитель инвентаря и fan-out) работает с облаками только через
    этот протокол.

    Реализации:
    - GCEProvider: вызывает CLI ``gcloud``
    - LocalProvider: хранит локальные «VM» в YAML-файле
    """

    @property
    def name(self) -> str:
        """Ключ регистрации провайдера (совпадает с ``VM.provider``)."""
        ...

    async def list_vms(self) -> list[VM]:
        """Полный снимок VM провайдера в его настроенной области видимости."""
        ...

    async def create(self, names: list[str], opts: CreateOpts) -> None:
        """Создать VM с заданными именами.

        Args:
            names: Имена новых VM (только доля этого провайдера).
            opts: Общие параметры создания кластера.
        """
        ...

    async def delete(self, vms: list[VM]) -> None:
        """Удалить VM. Все VM должны принадлежать этому провайдеру."""
        ...

    async def extend(self, vms: list[VM], lifetime: timedelta) -> None:
        """Установить новое время жизни на VM.

        Args:
            vms: VM этого провайдера.
            lifetime: Новое полное время жизни (не приращение).
        """
        ...
