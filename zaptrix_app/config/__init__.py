from .config import Config, TestingConfig, basedir

__all__ = ['Config', 'TestingConfig', 'basedir']
