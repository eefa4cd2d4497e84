"""Конфигурация приложения, загружаемая из переменных окружения."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_GCE_PROJECT = "ephemeral-clusters"


class Settings(BaseSettings):
    """Конфигурация ephemera.

    Все значения задаются через переменные окружения с префиксом ``EPHEMERA_``
    или через файл ``.env`` в рабочей директории. Списки передаются JSON-строкой,
    например ``EPHEMERA_PROVIDERS='["gce"]'``.
    """

    model_config = SettingsConfigDict(
        env_prefix="EPHEMERA_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    log_level: str = Field(default="INFO", description="Уровень логирования")

    providers: list[str] = Field(
        default_factory=lambda: ["gce", "local"],
        description="Провайдеры, которые регистрируются при старте (в порядке round-robin)",
    )
    default_lifetime: str = Field(default="12h", description="Время жизни новых кластеров по умолчанию")
    username: str = Field(default="", description="Имя пользователя для префикса кластеров (пусто — из gcloud)")
    email_domain: str = Field(default="@example.com", description="Домен, которому должен принадлежать аккаунт gcloud")

    gce_project: str = Field(default=DEFAULT_GCE_PROJECT, description="GCP-проект для кластеров")
    gce_zones: list[str] = Field(
        default_factory=lambda: ["us-east1-b", "us-west1-b", "europe-west2-b"],
        description="Зоны GCE для размещения VM",
    )
    gce_machine_type: str = Field(default="n1-standard-4", description="Тип машины GCE")
    gce_service_account: str = Field(default="", description="Сервисный аккаунт для VM GCE")
    gce_image: str = Field(default="ubuntu-2204-jammy-v20240927", description="Образ загрузочного диска")
    gce_image_project: str = Field(default="ubuntu-os-cloud", description="Проект образа загрузочного диска")

    local_state_path: Path = Field(
        default_factory=lambda: Path.home() / ".ephemera" / "local.yaml",
        description="YAML-файл состояния локального провайдера",
    )

    server_host: str = Field(default="0.0.0.0", description="Хост для HTTP-сервера")
    server_port: int = Field(default=8091, ge=1, le=65535, description="Порт для HTTP-сервера")
