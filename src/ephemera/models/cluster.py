"""Pydantic-модели кластеров и снимка инвентаря."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field, field_serializer, field_validator

from ephemera.models.vm import (
    LOCAL_NAME,
    VM,
    VMErrorKind,
    coerce_lifetime,
    coerce_utc,
    lifetime_to_ns,
    sort_vms,
)
from ephemera.utils.durations import format_duration, round_to_second

# GC-процесс проходит раз в час
GC_INTERVAL = timedelta(hours=1)
_EPSILON = timedelta(microseconds=1)


def ceil_to_hour(value: datetime) -> datetime:
    """Ближайшая граница часа не раньше ``value``.

    Если ``value`` ровно на границе, она же и возвращается.
    """
    shifted = value + GC_INTERVAL - _EPSILON
    return shifted.replace(minute=0, second=0, microsecond=0)


class CloudCluster(BaseModel):
    """Кластер — группа VM с общим именем по соглашению ``user-<clusterid>-<nodeid>``.

    ``created_at`` и ``lifetime`` — самое раннее создание и самое короткое время
    жизни среди VM кластера, поэтому оценка момента GC консервативна.
    """

    name: str
    user: str
    created_at: datetime
    lifetime: timedelta
    vms: list[VM] = Field(min_length=1)

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
        return self.name == LOCAL_NAME

    def clouds(self) -> list[str]:
        """Отсортированные имена провайдеров, чьи VM входят в кластер."""
        return sorted({vm.provider for vm in self.vms})

    @property
    def expires_at(self) -> datetime:
        return self.created_at + self.lifetime

    @property
    def gc_at(self) -> datetime:
        """Момент, когда ближайший часовой проход GC удалит кластер."""
        return ceil_to_hour(self.expires_at)

    def lifetime_remaining(self, now: datetime | None = None) -> timedelta:
        """Время до ``gc_at``; отрицательное, если кластер уже просрочен."""
        if now is None:
            now = datetime.now(timezone.utc)
        return self.gc_at - now

    def summary(self, now: datetime | None = None) -> str:
        """Однострочное описание: имя, число VM и оставшееся время."""
        text = f"{self.name}: {len(self.vms)}"
        if not self.is_local:
            remaining = round_to_second(self.lifetime_remaining(now))
            text += f" ({format_duration(remaining)})"
        return text


class Cloud(BaseModel):
    """Снимок инвентаря: кластеры по имени и VM с ошибками.

    У каждой VM из ``bad_instances`` есть хотя бы одна ошибка.
    """

    clusters: dict[str, CloudCluster] = Field(default_factory=dict)
    bad_instances: list[VM] = Field(default_factory=list)

    def sorted_clusters(self) -> list[CloudCluster]:
        """Кластеры в порядке имени — для вывода."""
        return [self.clusters[name] for name in sorted(self.clusters)]

    def bad_instance_errors(self) -> dict[VMErrorKind, list[VM]]:
        """Сгруппировать проблемные VM по виду ошибки.

        VM попадает в группу каждого своего вида ошибки, но в каждую не
        больше одного раза: несколько ошибок одного вида у VM схлопываются.
        Внутри группы VM отсортированы по каноническому ключу.
        """
        grouped: dict[VMErrorKind, list[VM]] = {}
        for vm in self.bad_instances:
            for kind in dict.fromkeys(error.kind for error in vm.errors):
                grouped.setdefault(kind, []).append(vm)
        return {kind: sort_vms(vms) for kind, vms in grouped.items()}
