"""Параллельный запуск операции по нескольким провайдерам (fan-out).

Задачи запускаются сразу все, по одной на провайдер, без ограничения
параллелизма. Упавшая задача не отменяет остальные: fan-out всегда ждёт
завершения всех задач, а затем сообщает обо всех ошибках одним
:class:`~ephemera.exceptions.FanOutError`. Побочные эффекты успешных задач
не откатываются.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from ephemera.exceptions import FanOutError, ProviderError
from ephemera.models.vm import VM
from ephemera.providers.base import VMProvider
from ephemera.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

ProviderAction = Callable[[VMProvider], Awaitable[None]]
MembershipAction = Callable[[VMProvider, list[VM]], Awaitable[None]]


async def providers_parallel(
    providers: Sequence[VMProvider],
    action: ProviderAction,
    *,
    operation: str,
) -> None:
    """Выполнить ``action`` для каждого провайдера параллельно.

    Args:
        providers: Провайдеры, каждый вызывается ровно один раз.
        action: Корутина-функция от провайдера.
        operation: Имя операции для сообщений об ошибках (``create``, ``delete``...).

    Raises:
        FanOutError: Если хотя бы одна задача упала; содержит ошибки всех
            упавших провайдеров в порядке ``providers``.
    """
    if not providers:
        return

    logger.debug(
        "Fan-out %s: %s",
        operation,
        ", ".join(p.name for p in providers),
    )
    results = await asyncio.gather(
        *(action(p) for p in providers),
        return_exceptions=True,
    )

    errors: list[ProviderError] = []
    for provider, result in zip(providers, results):
        if isinstance(result, ProviderError):
            errors.append(result)
        elif isinstance(result, Exception):
            errors.append(ProviderError(provider.name, operation, str(result)))
        elif isinstance(result, BaseException):
            raise result

    if errors:
        for error in errors:
            logger.warning("Fan-out %s: %s", operation, error)
        raise FanOutError(errors)


def group_by_provider(vms: Sequence[VM]) -> dict[str, list[VM]]:
    """Сгруппировать VM по имени провайдера (порядок — первое появление)."""
    grouped: dict[str, list[VM]] = {}
    for vm in vms:
        grouped.setdefault(vm.provider, []).append(vm)
    return grouped


async def fan_out(
    vms: Sequence[VM],
    registry: ProviderRegistry,
    action: MembershipAction,
    *,
    operation: str,
) -> None:
    """Выполнить ``action`` для каждого провайдера, чьи VM есть в ``vms``.

    Каждый провайдер получает ровно своё подмножество VM. Провайдеры,
    которых нет среди VM, не вызываются.

    Raises:
        ConfigurationError: Если VM принадлежит незарегистрированному
            провайдеру (до запуска каких-либо задач).
        FanOutError: Если хотя бы одна задача упала.
    """
    grouped = group_by_provider(vms)
    providers = registry.resolve(grouped)

    async def run(provider: VMProvider) -> None:
        await action(provider, grouped[provider.name])

    await providers_parallel(providers, run, operation=operation)
