"""Провайдер Google Compute Engine на основе CLI ``gcloud``."""

from __future__ import annotations

import asyncio
import getpass
import json
import logging
import math
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ephemera.config import DEFAULT_GCE_PROJECT
from ephemera.exceptions import ConfigurationError, ProviderError
from ephemera.models.vm import VM, CreateOpts, VMError, VMErrorKind
from ephemera.utils.durations import format_duration, parse_duration

if TYPE_CHECKING:
    from ephemera.config import Settings

logger = logging.getLogger(__name__)

PROVIDER_NAME = "gce"


# ---------------------------------------------------------------------------
# Разбор JSON-ответов gcloud
# ---------------------------------------------------------------------------


def _last_component(url: str) -> str:
    """Последний компонент URL ресурса.

    gcloud возвращает тип машины, зону и сеть ссылками вида
    ``https://www.googleapis.com/compute/v1/projects/p/zones/us-east1-b/machineTypes/n1-standard-16``.
    """
    return url.rsplit("/", 1)[-1]


class _AccessConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = ""
    nat_ip: str = Field("", alias="natIP")


class _NetworkInterface(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    network: str = ""
    network_ip: str = Field("", alias="networkIP")
    access_configs: list[_AccessConfig] = Field(default_factory=list, alias="accessConfigs")


class GCloudInstance(BaseModel):
    """Элемент ответа ``gcloud compute instances list --format json``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    creation_timestamp: datetime = Field(alias="creationTimestamp")
    network_interfaces: list[_NetworkInterface] = Field(
        default_factory=list, alias="networkInterfaces",
    )
    machine_type: str = Field("", alias="machineType")
    zone: str = ""

    def to_vm(self, project: str, remote_user: str) -> VM:
        """Преобразовать ответ gcloud в общую модель VM с диагностикой ошибок."""
        errors: list[VMError] = []

        lifetime = timedelta(0)
        lifetime_label = self.labels.get("lifetime")
        if lifetime_label is None:
            errors.append(VMError(
                kind=VMErrorKind.NO_EXPIRATION,
                message="missing lifetime label",
            ))
        else:
            try:
                lifetime = parse_duration(lifetime_label)
            except ValueError:
                errors.append(VMError(
                    kind=VMErrorKind.NO_EXPIRATION,
                    message=f"could not parse lifetime label {lifetime_label!r}",
                ))

        public_ip = private_ip = vpc = ""
        if not self.network_interfaces:
            errors.append(VMError(
                kind=VMErrorKind.BAD_NETWORK,
                message="no network interfaces",
            ))
        else:
            nic = self.network_interfaces[0]
            private_ip = nic.network_ip
            if not nic.access_configs:
                errors.append(VMError(
                    kind=VMErrorKind.BAD_NETWORK,
                    message="no access config on the first network interface",
                ))
            else:
                public_ip = nic.access_configs[0].nat_ip
                vpc = _last_component(nic.network)

        zone = _last_component(self.zone)
        return VM(
            name=self.name,
            provider=PROVIDER_NAME,
            provider_id=self.name,
            created_at=self.creation_timestamp,
            lifetime=lifetime,
            errors=errors,
            dns=f"{self.name}.{zone}.{project}",
            private_ip=private_ip,
            public_ip=public_ip,
            # gcloud заходит на VM под локальным пользователем, а не под аккаунтом Google
            remote_user=remote_user,
            vpc=vpc,
            machine_type=_last_component(self.machine_type),
            zone=zone,
        )


class _GCloudAccount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account: str
    status: str = ""


_INSTANCES = TypeAdapter(list[GCloudInstance])
_ACCOUNTS = TypeAdapter(list[_GCloudAccount])


# ---------------------------------------------------------------------------
# Конфигурация и провайдер
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GCEOptions:
    """Параметры провайдера GCE."""

    project: str = DEFAULT_GCE_PROJECT
    zones: tuple[str, ...] = ("us-east1-b", "us-west1-b", "europe-west2-b")
    machine_type: str = "n1-standard-4"
    service_account: str = ""
    image: str = "ubuntu-2204-jammy-v20240927"
    image_project: str = "ubuntu-os-cloud"
    email_domain: str = "@example.com"


def split_across_zones(names: list[str], zones: list[str]) -> list[tuple[str, list[str]]]:
    """Распределить имена VM по зонам блоками.

    Каждая зона получает ``ceil(оставшиеся VM / оставшиеся зоны)``, так что
    лишние VM достаются первым зонам по одной.
    """
    batches: list[tuple[str, list[str]]] = []
    remaining = list(names)
    for index, zone in enumerate(zones):
        if not remaining:
            break
        count = math.ceil(len(remaining) / (len(zones) - index))
        batches.append((zone, remaining[:count]))
        remaining = remaining[count:]
    return batches


async def _wait_all(tasks: list[Awaitable[bytes]]) -> None:
    """Дождаться всех вызовов gcloud и пробросить первую ошибку."""
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result


class GCEProvider:
    """Реализует :class:`~ephemera.providers.base.VMProvider` для GCE через ``gcloud``.

    Каждая операция — один или несколько вызовов ``gcloud``; создание и удаление
    выполняются параллельно по зонам, после них обновляется ``~/.ssh/config``.
    """

    name = PROVIDER_NAME

    def __init__(self, options: GCEOptions, *, gcloud_path: str = "gcloud") -> None:
        self._opts = options
        self._gcloud = gcloud_path
        self._remote_user = getpass.getuser()

    @classmethod
    def from_settings(cls, settings: Settings, *, gcloud_path: str = "gcloud") -> GCEProvider:
        options = GCEOptions(
            project=settings.gce_project,
            zones=tuple(settings.gce_zones),
            machine_type=settings.gce_machine_type,
            service_account=settings.gce_service_account,
            image=settings.gce_image,
            image_project=settings.gce_image_project,
            email_domain=settings.email_domain,
        )
        return cls(options, gcloud_path=gcloud_path)

    @property
    def options(self) -> GCEOptions:
        return self._opts

    # --- Протокол VMProvider ---

    async def list_vms(self) -> list[VM]:
        """Получить все VM проекта."""
        args = [
            "compute", "instances", "list",
            "--project", self._opts.project,
            "--format", "json",
        ]
        raw = await self._run_json(args, "list")
        try:
            instances = _INSTANCES.validate_python(raw)
        except ValidationError as exc:
            raise ProviderError(self.name, "list", f"unexpected gcloud output: {exc}") from exc

        vms = [inst.to_vm(self._opts.project, self._remote_user) for inst in instances]
        logger.debug("gce: получено %d VM из проекта %s", len(vms), self._opts.project)
        return vms

    async def create(self, names: list[str], opts: CreateOpts) -> None:
        """Создать VM, разложив их по зонам; по одному вызову gcloud на зону."""
        if not names:
            return
        if not self._opts.zones:
            raise ConfigurationError("gce: no zones configured")

        if self._opts.project != DEFAULT_GCE_PROJECT:
            logger.warning(
                "gce: время жизни кластеров в проекте %s соблюдается, только если "
                "для него запущен периодический GC",
                self._opts.project,
            )

        zones = list(self._opts.zones)
        if not opts.geo_distributed:
            zones = zones[:1]

        args = [
            "compute", "instances", "create",
            "--subnet", "default",
            "--maintenance-policy", "MIGRATE",
            "--scopes", "default,storage-rw",
            "--image", self._opts.image,
            "--image-project", self._opts.image_project,
            "--boot-disk-size", "10",
            "--boot-disk-type", "pd-ssd",
        ]
        if self._opts.service_account:
            args += ["--service-account", self._opts.service_account]
        if opts.use_local_ssd:
            args += ["--local-ssd", "interface=SCSI"]
        args += [
            "--machine-type", self._opts.machine_type,
            "--labels", f"lifetime={format_duration(opts.lifetime)}",
            "--project", self._opts.project,
        ]

        batches = split_across_zones(names, zones)
        logger.info(
            "gce: создание %d VM в зонах %s",
            len(names),
            ", ".join(zone for zone, _ in batches),
        )
        await _wait_all([
            self._run([*args, "--zone", zone, *batch], "create")
            for zone, batch in batches
        ])
        await self.config_ssh()

    async def delete(self, vms: list[VM]) -> None:
        """Удалить VM вместе с дисками; по одному вызову gcloud на зону."""
        by_zone: dict[str, list[str]] = {}
        for vm in vms:
            if vm.provider != self.name:
                raise ProviderError(
                    self.name, "delete", f"received VM {vm.name} from provider {vm.provider}",
                )
            by_zone.setdefault(vm.zone, []).append(vm.name)

        await _wait_all([
            self._run(
                [
                    "compute", "instances", "delete",
                    "--delete-disks", "all",
                    "--project", self._opts.project,
                    "--zone", zone,
                    "--quiet",
                    *names,
                ],
                "delete",
            )
            for zone, names in by_zone.items()
        ])
        # пересобрать ~/.ssh/config без удалённых VM
        await self.clean_ssh()
        await self.config_ssh()

    async def extend(self, vms: list[VM], lifetime: timedelta) -> None:
        """Обновить метку lifetime; gcloud принимает только одну VM за вызов."""
        label = f"lifetime={format_duration(lifetime)}"
        for vm in vms:
            await self._run(
                [
                    "compute", "instances", "add-labels",
                    "--project", self._opts.project,
                    "--zone", vm.zone,
                    "--labels", label,
                    vm.name,
                ],
                "extend",
            )

    # --- Прочее ---

    async def config_ssh(self) -> None:
        """Добавить VM проекта в ``~/.ssh/config``."""
        await self._run(
            ["compute", "config-ssh", "--project", self._opts.project, "--quiet"],
            "config-ssh",
        )

    async def clean_ssh(self) -> None:
        """Убрать из ``~/.ssh/config`` все записи, добавленные gcloud."""
        await self._run(
            ["compute", "config-ssh", "--project", self._opts.project, "--quiet", "--remove"],
            "clean-ssh",
        )

    async def find_active_account(self) -> str:
        """Вернуть имя пользователя активного аккаунта gcloud.

        Raises:
            ProviderError: Если активных аккаунтов не ровно один или аккаунт
                не принадлежит настроенному домену.
        """
        raw = await self._run_json(
            ["auth", "list", "--format", "json", "--filter", "status~ACTIVE"],
            "auth",
        )
        try:
            accounts = _ACCOUNTS.validate_python(raw)
        except ValidationError as exc:
            raise ProviderError(self.name, "auth", f"unexpected gcloud output: {exc}") from exc

        if len(accounts) != 1:
            raise ProviderError(self.name, "auth", "no active accounts found, please configure gcloud")

        account = accounts[0].account
        if not account.endswith(self._opts.email_domain):
            raise ProviderError(
                self.name,
                "auth",
                f"active account {account!r} does not belong to domain {self._opts.email_domain}",
            )
        return account.split("@", 1)[0]

    async def _run(self, args: list[str], operation: str) -> bytes:
        """Запустить gcloud и вернуть stdout.

        Raises:
            ProviderError: При ненулевом коде возврата или невозможности запуска.
        """
        command = f"gcloud {' '.join(args)}"
        logger.debug("gce: %s", command)
        try:
            proc = await asyncio.create_subprocess_exec(
                self._gcloud,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProviderError(self.name, operation, f"could not run {command}: {exc}") from exc

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise ProviderError(
                self.name,
                operation,
                f"command: {command}\nexit code: {proc.returncode}\n"
                f"stdout: {stdout.decode(errors='replace').strip()}\n"
                f"stderr: {stderr.decode(errors='replace').strip()}",
            )
        return stdout

    async def _run_json(self, args: list[str], operation: str) -> object:
        output = await self._run(args, operation)
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise ProviderError(
                self.name,
                operation,
                f"failed to parse json {output[:200]!r}: {exc}",
            ) from exc
