from .config_loader import config
from .settings import EngineSettings, load_settings

__all__ = ['config', 'EngineSettings', 'load_settings']
