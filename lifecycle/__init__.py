# lifecycle package initializer
__all__ = ["config", "controller"]
