"""Разбор имён VM по соглашению ``user-<clusterid>-<nodeid>``."""

from __future__ import annotations

from ephemera.exceptions import InvalidNameError
from ephemera.models.vm import LOCAL_NAME, VM

VM_NAME_FORMAT = "user-<clusterid>-<nodeid>"


def names_from_vm(vm: VM) -> tuple[str, str]:
    """Извлечь (пользователь, имя кластера) из имени VM.

    Имя кластера — всё, кроме последнего компонента (номера узла), поэтому
    дефисы внутри имени пользователя или кластера допустимы. Локальные VM
    всегда принадлежат кластеру ``local``.

    Raises:
        InvalidNameError: Если в имени меньше трёх компонентов.
    """
    if vm.is_local:
        return LOCAL_NAME, LOCAL_NAME

    parts = vm.name.split("-")
    if len(parts) < 3:
        raise InvalidNameError(
            f"expected VM name in the form {VM_NAME_FORMAT}, got {vm.name}"
        )
    return parts[0], "-".join(parts[:-1])


def vm_name(cluster_name: str, index: int) -> str:
    """Имя ``index``-го узла кластера (нумерация с 1): ``alice-test-0003``."""
    return f"{cluster_name}-{index:04d}"
