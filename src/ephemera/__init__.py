"""ephemera — инвентаризация и управление эфемерными тестовыми кластерами."""

__version__ = "0.1.0"
