from weft.config.loader import load_config, save_config
from weft.config.schema import EngineConfig, LoggingConfig, RetryDefaults, WeftConfig

__all__ = [
    "EngineConfig",
    "LoggingConfig",
    "RetryDefaults",
    "WeftConfig",
    "load_config",
    "save_config",
]
