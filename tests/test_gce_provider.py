"""Тесты провайдера GCE: разбор ответа gcloud и формирование команд."""

from __future__ import annotations

import json
import shutil
from datetime import datetime, timedelta, timezone

import pytest

from ephemera.exceptions import ConfigurationError, ProviderError
from ephemera.models.vm import CreateOpts, VMErrorKind
from ephemera.providers.gce import GCEOptions, GCEProvider, GCloudInstance, split_across_zones
from conftest import make_vm

_API = "https://www.googleapis.com/compute/v1/projects/ephemeral-clusters"


def _instance(**overrides) -> dict:
    data = {
        "name": "alice-test-0001",
        "labels": {"lifetime": "12h0m0s"},
        "creationTimestamp": "2024-01-01T02:00:00.000-08:00",
        "networkInterfaces": [
            {
                "network": f"{_API}/global/networks/default",
                "networkIP": "10.142.0.2",
                "accessConfigs": [{"name": "external-nat", "natIP": "35.190.1.2"}],
            }
        ],
        "machineType": f"{_API}/zones/us-east1-b/machineTypes/n1-standard-4",
        "zone": f"{_API}/zones/us-east1-b",
        "status": "RUNNING",
    }
    data.update(overrides)
    return data


class _Recorder:
    """Подмена GCEProvider._run: запоминает аргументы и отдаёт заготовленный stdout."""

    def __init__(self, output: bytes = b"[]") -> None:
        self.output = output
        self.calls: list[tuple[list[str], str]] = []

    async def __call__(self, args: list[str], operation: str) -> bytes:
        self.calls.append((list(args), operation))
        return self.output

    def args_of(self, operation: str) -> list[list[str]]:
        return [args for args, op in self.calls if op == operation]

    def operations(self) -> list[str]:
        return [op for _, op in self.calls]


def _provider(monkeypatch, output: bytes = b"[]", **options) -> tuple[GCEProvider, _Recorder]:
    provider = GCEProvider(GCEOptions(**options))
    recorder = _Recorder(output)
    monkeypatch.setattr(provider, "_run", recorder)
    return provider, recorder


def _zone_of(args: list[str]) -> str:
    return args[args.index("--zone") + 1]


# ---------------------------------------------------------------------------
# GCloudInstance.to_vm
# ---------------------------------------------------------------------------


def test_to_vm_healthy_instance() -> None:
    vm = GCloudInstance.model_validate(_instance()).to_vm("ephemeral-clusters", "alice")

    assert vm.errors == []
    assert vm.provider == "gce"
    assert vm.created_at == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert vm.lifetime == timedelta(hours=12)
    assert vm.zone == "us-east1-b"
    assert vm.machine_type == "n1-standard-4"
    assert vm.vpc == "default"
    assert vm.private_ip == "10.142.0.2"
    assert vm.public_ip == "35.190.1.2"
    assert vm.dns == "alice-test-0001.us-east1-b.ephemeral-clusters"
    assert vm.remote_user == "alice"


def test_to_vm_missing_lifetime_label() -> None:
    vm = GCloudInstance.model_validate(_instance(labels={})).to_vm("p", "alice")

    assert [e.kind for e in vm.errors] == [VMErrorKind.NO_EXPIRATION]
    assert vm.lifetime == timedelta(0)


def test_to_vm_unparseable_lifetime_label() -> None:
    vm = GCloudInstance.model_validate(_instance(labels={"lifetime": "forever"})).to_vm("p", "alice")

    assert [e.kind for e in vm.errors] == [VMErrorKind.NO_EXPIRATION]
    assert "forever" in vm.errors[0].message


@pytest.mark.parametrize("label", ["100000000h", "99999999999999h"])
def test_to_vm_out_of_range_lifetime_label(label: str) -> None:
    """Огромная метка lifetime помечает VM, а не роняет разбор."""
    vm = GCloudInstance.model_validate(_instance(labels={"lifetime": label})).to_vm("p", "alice")

    assert [e.kind for e in vm.errors] == [VMErrorKind.NO_EXPIRATION]
    assert vm.lifetime == timedelta(0)


def test_to_vm_without_network_interfaces() -> None:
    vm = GCloudInstance.model_validate(_instance(networkInterfaces=[])).to_vm("p", "alice")

    assert [e.kind for e in vm.errors] == [VMErrorKind.BAD_NETWORK]
    assert vm.private_ip == ""


def test_to_vm_without_access_config_keeps_private_ip() -> None:
    nic = {"network": f"{_API}/global/networks/default", "networkIP": "10.0.0.9"}
    vm = GCloudInstance.model_validate(_instance(networkInterfaces=[nic])).to_vm("p", "alice")

    assert [e.kind for e in vm.errors] == [VMErrorKind.BAD_NETWORK]
    assert vm.private_ip == "10.0.0.9"
    assert vm.public_ip == ""


def test_to_vm_collects_multiple_errors() -> None:
    raw = _instance(labels={}, networkInterfaces=[])
    vm = GCloudInstance.model_validate(raw).to_vm("p", "alice")

    assert [e.kind for e in vm.errors] == [VMErrorKind.NO_EXPIRATION, VMErrorKind.BAD_NETWORK]


# ---------------------------------------------------------------------------
# split_across_zones
# ---------------------------------------------------------------------------


def test_split_across_zones_front_loads_remainder() -> None:
    names = [f"n{i}" for i in range(5)]

    batches = split_across_zones(names, ["a", "b", "c"])

    assert batches == [("a", ["n0", "n1"]), ("b", ["n2", "n3"]), ("c", ["n4"])]


def test_split_across_zones_fewer_names_than_zones() -> None:
    assert split_across_zones(["n0", "n1"], ["a", "b", "c"]) == [("a", ["n0"]), ("b", ["n1"])]


def test_split_across_single_zone() -> None:
    assert split_across_zones(["n0", "n1", "n2"], ["a"]) == [("a", ["n0", "n1", "n2"])]


# ---------------------------------------------------------------------------
# Команды gcloud
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_vms_parses_instances(monkeypatch) -> None:
    output = json.dumps([_instance(), _instance(name="alice-test-0002", labels={})]).encode()
    provider, recorder = _provider(monkeypatch, output, project="ephemeral-clusters")

    vms = await provider.list_vms()

    assert [vm.name for vm in vms] == ["alice-test-0001", "alice-test-0002"]
    assert vms[1].errors[0].kind == VMErrorKind.NO_EXPIRATION
    args, operation = recorder.calls[0]
    assert operation == "list"
    assert args[:3] == ["compute", "instances", "list"]
    assert "--project" in args and "ephemeral-clusters" in args


@pytest.mark.asyncio
async def test_list_vms_survives_out_of_range_lifetime(monkeypatch) -> None:
    output = json.dumps([
        _instance(),
        _instance(name="alice-test-0002", labels={"lifetime": "99999999999999h"}),
    ]).encode()
    provider, _ = _provider(monkeypatch, output)

    vms = await provider.list_vms()

    assert vms[0].errors == []
    assert [e.kind for e in vms[1].errors] == [VMErrorKind.NO_EXPIRATION]


@pytest.mark.asyncio
async def test_list_vms_rejects_unexpected_json(monkeypatch) -> None:
    provider, _ = _provider(monkeypatch, b'{"name": "not-a-list"}')

    with pytest.raises(ProviderError, match="unexpected gcloud output"):
        await provider.list_vms()


@pytest.mark.asyncio
async def test_list_vms_rejects_non_json(monkeypatch) -> None:
    provider, _ = _provider(monkeypatch, b"ERROR: not json")

    with pytest.raises(ProviderError, match="failed to parse json"):
        await provider.list_vms()


@pytest.mark.asyncio
async def test_create_uses_first_zone_by_default(monkeypatch) -> None:
    provider, recorder = _provider(monkeypatch, zones=("us-east1-b", "us-west1-b"))
    opts = CreateOpts(lifetime=timedelta(hours=6), vm_providers=["gce"])

    await provider.create(["alice-test-0001", "alice-test-0002"], opts)

    [args] = recorder.args_of("create")
    assert _zone_of(args) == "us-east1-b"
    assert args[-2:] == ["alice-test-0001", "alice-test-0002"]
    assert args[args.index("--labels") + 1] == "lifetime=6h0m0s"
    assert "--local-ssd" not in args


@pytest.mark.asyncio
async def test_create_geo_distributed_spreads_across_zones(monkeypatch) -> None:
    provider, recorder = _provider(monkeypatch, zones=("z1", "z2", "z3"))
    opts = CreateOpts(geo_distributed=True, use_local_ssd=True)

    await provider.create([f"alice-geo-000{i}" for i in range(1, 5)], opts)

    creates = recorder.args_of("create")
    assert sorted(_zone_of(args) for args in creates) == ["z1", "z2", "z3"]
    assert all("--local-ssd" in args for args in creates)


@pytest.mark.asyncio
async def test_create_passes_service_account(monkeypatch) -> None:
    provider, recorder = _provider(monkeypatch, service_account="vm@proj.iam.gserviceaccount.com")

    await provider.create(["alice-test-0001"], CreateOpts())

    args, _ = recorder.calls[0]
    assert args[args.index("--service-account") + 1] == "vm@proj.iam.gserviceaccount.com"


@pytest.mark.asyncio
async def test_create_nothing_to_do(monkeypatch) -> None:
    provider, recorder = _provider(monkeypatch)

    await provider.create([], CreateOpts())

    assert recorder.calls == []


@pytest.mark.asyncio
async def test_create_without_zones(monkeypatch) -> None:
    provider, _ = _provider(monkeypatch, zones=())

    with pytest.raises(ConfigurationError):
        await provider.create(["alice-test-0001"], CreateOpts())


@pytest.mark.asyncio
async def test_delete_groups_by_zone(monkeypatch) -> None:
    provider, recorder = _provider(monkeypatch)
    vms = [
        make_vm(name="alice-test-0001", zone="z1"),
        make_vm(name="alice-test-0002", zone="z2"),
        make_vm(name="alice-test-0003", zone="z1"),
    ]

    await provider.delete(vms)

    by_zone = {_zone_of(args): args for args in recorder.args_of("delete")}
    assert set(by_zone) == {"z1", "z2"}
    assert by_zone["z1"][-2:] == ["alice-test-0001", "alice-test-0003"]
    assert "--quiet" in by_zone["z2"]
    assert by_zone["z2"][by_zone["z2"].index("--delete-disks") + 1] == "all"


@pytest.mark.asyncio
async def test_delete_rejects_foreign_vms(monkeypatch) -> None:
    provider, recorder = _provider(monkeypatch)

    with pytest.raises(ProviderError, match="from provider local"):
        await provider.delete([make_vm(provider="local")])

    assert recorder.calls == []


@pytest.mark.asyncio
async def test_extend_labels_each_vm(monkeypatch) -> None:
    provider, recorder = _provider(monkeypatch)
    vms = [make_vm(name="alice-test-0001"), make_vm(name="alice-test-0002")]

    await provider.extend(vms, timedelta(hours=18))

    assert len(recorder.calls) == 2
    for (args, operation), vm in zip(recorder.calls, vms):
        assert operation == "extend"
        assert args[:3] == ["compute", "instances", "add-labels"]
        assert args[-1] == vm.name
        assert args[args.index("--labels") + 1] == "lifetime=18h0m0s"


# ---------------------------------------------------------------------------
# ~/.ssh/config
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_config_ssh_command(monkeypatch) -> None:
    provider, recorder = _provider(monkeypatch, project="ephemeral-clusters")

    await provider.config_ssh()

    assert recorder.calls == [
        (["compute", "config-ssh", "--project", "ephemeral-clusters", "--quiet"], "config-ssh"),
    ]


@pytest.mark.asyncio
async def test_clean_ssh_command(monkeypatch) -> None:
    provider, recorder = _provider(monkeypatch, project="ephemeral-clusters")

    await provider.clean_ssh()

    assert recorder.calls == [
        (
            ["compute", "config-ssh", "--project", "ephemeral-clusters", "--quiet", "--remove"],
            "clean-ssh",
        ),
    ]


@pytest.mark.asyncio
async def test_create_then_configures_ssh(monkeypatch) -> None:
    provider, recorder = _provider(monkeypatch, zones=("z1", "z2"))

    await provider.create(["alice-geo-0001", "alice-geo-0002"], CreateOpts(geo_distributed=True))

    assert recorder.operations() == ["create", "create", "config-ssh"]


@pytest.mark.asyncio
async def test_delete_then_rebuilds_ssh_config(monkeypatch) -> None:
    provider, recorder = _provider(monkeypatch)

    await provider.delete([make_vm(name="alice-test-0001", zone="z1")])

    assert recorder.operations() == ["delete", "clean-ssh", "config-ssh"]


@pytest.mark.asyncio
async def test_failed_create_skips_ssh_config(monkeypatch) -> None:
    provider = GCEProvider(GCEOptions())
    operations: list[str] = []

    async def failing_run(args: list[str], operation: str) -> bytes:
        operations.append(operation)
        raise ProviderError("gce", operation, "quota exceeded")

    monkeypatch.setattr(provider, "_run", failing_run)

    with pytest.raises(ProviderError, match="quota exceeded"):
        await provider.create(["alice-test-0001"], CreateOpts())

    assert operations == ["create"]


# ---------------------------------------------------------------------------
# find_active_account
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_find_active_account(monkeypatch) -> None:
    output = json.dumps([{"account": "alice@example.com", "status": "ACTIVE"}]).encode()
    provider, _ = _provider(monkeypatch, output)

    assert await provider.find_active_account() == "alice"


@pytest.mark.asyncio
async def test_find_active_account_wrong_domain(monkeypatch) -> None:
    output = json.dumps([{"account": "alice@gmail.com", "status": "ACTIVE"}]).encode()
    provider, _ = _provider(monkeypatch, output)

    with pytest.raises(ProviderError, match="does not belong"):
        await provider.find_active_account()


@pytest.mark.asyncio
async def test_find_active_account_none(monkeypatch) -> None:
    provider, _ = _provider(monkeypatch, b"[]")

    with pytest.raises(ProviderError, match="no active accounts"):
        await provider.find_active_account()


# ---------------------------------------------------------------------------
# Запуск процесса
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_missing_binary(tmp_path) -> None:
    provider = GCEProvider(GCEOptions(), gcloud_path=str(tmp_path / "no-gcloud"))

    with pytest.raises(ProviderError, match="could not run"):
        await provider.list_vms()


@pytest.mark.asyncio
@pytest.mark.skipif(shutil.which("false") is None, reason="нужна утилита false")
async def test_run_nonzero_exit_code() -> None:
    provider = GCEProvider(GCEOptions(), gcloud_path=shutil.which("false"))

    with pytest.raises(ProviderError) as exc_info:
        await provider.list_vms()

    assert "exit code: 1" in str(exc_info.value)
    assert exc_info.value.operation == "list"
