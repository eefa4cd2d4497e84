"""Точка входа CLI ephemera."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from ephemera import __version__
from ephemera.utils.durations import format_duration, parse_duration, round_to_second

if TYPE_CHECKING:
    from ephemera.models.cluster import Cloud, CloudCluster
    from ephemera.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


def _duration_arg(value: str) -> timedelta:
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _providers_arg(value: str) -> list[str]:
    return [p.strip() for p in value.split(",") if p.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ephemera",
        description="Инвентаризация и управление эфемерными тестовыми кластерами в нескольких облаках",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Уровень логирования (переопределяет EPHEMERA_LOG_LEVEL)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"ephemera {__version__}",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    list_cmd = sub.add_parser("list", help="Показать кластеры и проблемные VM")
    list_cmd.add_argument("pattern", nargs="?", default=None, help="Регулярное выражение для имени кластера")
    list_cmd.add_argument("--details", "-d", action="store_true", help="Подробный вывод с VM")
    list_cmd.add_argument(
        "--output-format",
        choices=["text", "json"],
        default="text",
        help="Формат вывода (по умолчанию: text)",
    )

    create_cmd = sub.add_parser("create", help="Создать кластер")
    create_cmd.add_argument("cluster", help="Имя кластера, например alice-test")
    create_cmd.add_argument("--nodes", "-n", type=int, required=True, help="Число VM")
    create_cmd.add_argument(
        "--lifetime", "-l",
        type=_duration_arg,
        default=None,
        help="Время жизни, например 12h или 1h30m (переопределяет EPHEMERA_DEFAULT_LIFETIME)",
    )
    create_cmd.add_argument(
        "--providers",
        type=_providers_arg,
        default=None,
        help="Провайдеры через запятую, VM раскладываются по ним round-robin",
    )
    create_cmd.add_argument("--geo", action="store_true", help="Распределить VM по всем зонам")
    create_cmd.add_argument("--local-ssd", action="store_true", help="Использовать локальный SSD")

    destroy_cmd = sub.add_parser("destroy", help="Удалить кластеры")
    destroy_cmd.add_argument("clusters", nargs="+", help="Имена кластеров")

    extend_cmd = sub.add_parser("extend", help="Продлить время жизни кластера")
    extend_cmd.add_argument("cluster", help="Имя кластера")
    extend_cmd.add_argument(
        "--lifetime", "-l",
        type=_duration_arg,
        required=True,
        help="На сколько продлить, например 6h",
    )

    return parser


async def async_main(
    args: argparse.Namespace,
    *,
    registry: ProviderRegistry | None = None,
) -> int:
    """Собрать зависимости и выполнить команду. Возвращает код выхода."""
    # Отложенные импорты — чтобы --help работал быстро
    from ephemera import orchestrator
    from ephemera.config import Settings
    from ephemera.exceptions import ConfigurationError, EphemeraError
    from ephemera.logging_config import setup_logging
    from ephemera.models.vm import CreateOpts
    from ephemera.providers.registry import build_registry

    # 1. Загрузка настроек
    try:
        settings = Settings()
    except Exception as exc:
        # pydantic-settings выбрасывает ValidationError при некорректных значениях
        print(
            f"Ошибка конфигурации: {exc}\n\n"
            f"Переменные окружения задаются с префиксом EPHEMERA_.",
            file=sys.stderr,
        )
        return 2

    # 2. Настройка логирования
    setup_logging(args.log_level or settings.log_level, quiet_loggers=("asyncio",))

    try:
        if registry is None:
            registry = build_registry(settings)

        if args.command == "list":
            cloud = await orchestrator.list_clusters(registry, args.pattern)
            if args.output_format == "json":
                import json

                print(json.dumps(cloud.model_dump(mode="json"), indent=2, ensure_ascii=False))
            else:
                _print_cloud(cloud, details=args.details)

        elif args.command == "create":
            lifetime = args.lifetime
            if lifetime is None:
                try:
                    lifetime = parse_duration(settings.default_lifetime)
                except ValueError as exc:
                    raise ConfigurationError(f"invalid EPHEMERA_DEFAULT_LIFETIME: {exc}") from exc
            opts = CreateOpts(
                lifetime=lifetime,
                geo_distributed=args.geo,
                use_local_ssd=args.local_ssd,
                vm_providers=args.providers if args.providers is not None else registry.names(),
            )
            username = await orchestrator.resolve_username(registry, settings.username)
            result = await orchestrator.create_cluster(
                registry, args.cluster, args.nodes, opts, username=username,
            )
            print(f"Кластер {result.name} создан ({result.nodes} VM):")
            for provider, names in result.allocation.items():
                print(f"  {provider}: {', '.join(names) or '-'}")

        elif args.command == "destroy":
            destroyed = await orchestrator.destroy_clusters(registry, args.clusters)
            for name in destroyed:
                print(f"Кластер {name} удалён")

        elif args.command == "extend":
            cluster = await orchestrator.extend_cluster(registry, args.cluster, args.lifetime)
            _print_cluster_details(cluster)

    except ConfigurationError as exc:
        logger.error("Ошибка конфигурации: %s", exc)
        return 2
    except EphemeraError as exc:
        logger.error("Ошибка: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Прервано пользователем")
        return 130

    return 0


def _format_remaining(cluster: CloudCluster, now: datetime | None = None) -> str:
    if cluster.is_local:
        return "(без срока жизни)"
    remaining = round_to_second(cluster.lifetime_remaining(now))
    if remaining.total_seconds() <= 0:
        return f"истёк {format_duration(-remaining)} назад"
    return f"осталось {format_duration(remaining)}"


def _print_cluster_details(cluster: CloudCluster, now: datetime | None = None) -> None:
    """Вывод кластера с облаками, оставшимся временем и списком VM."""
    print(f"{cluster.name}: [{', '.join(cluster.clouds())}] {_format_remaining(cluster, now)}")
    for vm in cluster.vms:
        print(f"  {vm.name}\t{vm.dns}\t{vm.private_ip}\t{vm.public_ip}")


def _print_cloud(cloud: Cloud, *, details: bool = False, now: datetime | None = None) -> None:
    """Вывод снимка инвентаря в stdout."""
    clusters = cloud.sorted_clusters()
    for cluster in clusters:
        if details:
            _print_cluster_details(cluster, now)
        else:
            print(cluster.summary(now))

    if not clusters:
        print("Кластеры не найдены.")

    errors = cloud.bad_instance_errors()
    if errors:
        print()
        print(f"VM с ошибками ({len(cloud.bad_instances)}):")
        for kind in sorted(errors, key=lambda k: k.value):
            vms = errors[kind]
            print(f"  {kind.value} ({len(vms)}): {', '.join(vm.name for vm in vms)}")


def main() -> None:
    """Синхронная точка входа для CLI."""
    parser = build_parser()
    args = parser.parse_args()
    exit_code = asyncio.run(async_main(args))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
