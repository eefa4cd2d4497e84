"""Pydantic-модели виртуальных машин, возвращаемых облачными провайдерами."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

# Имя локального псевдо-провайдера и одновременно имя его кластера/пользователя
LOCAL_NAME = "local"

_NS_PER_MICROSECOND = 1_000


class VMErrorKind(str, Enum):
    """Виды диагностических ошибок VM, из-за которых она не попадает в кластер."""

    INVALID_NAME = "invalid_name"
    NO_EXPIRATION = "no_expiration"
    BAD_NETWORK = "bad_network"


class VMError(BaseModel):
    """Диагностическая ошибка VM: тег вида и произвольное описание."""

    model_config = ConfigDict(frozen=True)

    kind: VMErrorKind
    message: str = ""

    def __str__(self) -> str:
        return self.message or self.kind.value


def lifetime_to_ns(value: timedelta) -> int:
    """Перевести длительность в целое число наносекунд."""
    return (value // timedelta(microseconds=1)) * _NS_PER_MICROSECOND


def lifetime_from_ns(value: int) -> timedelta:
    """Обратное преобразование для :func:`lifetime_to_ns`."""
    return timedelta(microseconds=value // _NS_PER_MICROSECOND)


def coerce_lifetime(value: object) -> object:
    # bool не считается наносекундами
    if isinstance(value, int) and not isinstance(value, bool):
        return lifetime_from_ns(value)
    return value


def coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class VM(BaseModel):
    """Один экземпляр VM в снимке провайдера.

    Неизменяем: провайдер возвращает готовый объект, а построитель инвентаря
    добавляет ошибки только в копию (``model_copy``).
    ``lifetime`` сериализуется целым числом наносекунд.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    provider: str
    provider_id: str = ""
    created_at: datetime
    lifetime: timedelta = timedelta(0)
    errors: list[VMError] = Field(default_factory=list)

    dns: str = ""
    private_ip: str = ""
    public_ip: str = ""
    remote_user: str = ""
    vpc: str = ""
    machine_type: str = ""
    zone: str = ""

    @field_validator("lifetime", mode="before")
    @classmethod
    def _lifetime_from_ns(cls, value: object) -> object:
        return coerce_lifetime(value)

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        return coerce_utc(value)

    @field_serializer("lifetime")
    def _lifetime_to_ns(self, value: timedelta) -> int:
        return lifetime_to_ns(value)

    @property
    def is_local(self) -> bool:
        return self.provider == LOCAL_NAME

    @property
    def sort_key(self) -> tuple[str, str]:
        """Канонический ключ для детерминированной сортировки."""
        return (self.name, self.provider)

    def with_error(self, error: VMError) -> VM:
        """Вернуть копию VM с добавленной ошибкой."""
        return self.model_copy(update={"errors": [*self.errors, error]})


def sort_vms(vms: list[VM]) -> list[VM]:
    """Отсортировать VM по каноническому ключу (имя, провайдер)."""
    return sorted(vms, key=lambda v: v.sort_key)


class CreateOpts(BaseModel):
    """Параметры создания кластера, общие для всех провайдеров."""

    lifetime: timedelta = timedelta(hours=12)
    geo_distributed: bool = False
    use_local_ssd: bool = False
    # Порядок важен: VM раскладываются по провайдерам round-robin
    vm_providers: list[str] = Field(default_factory=list)
