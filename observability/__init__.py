# observability package initializer
__all__ = ["metrics"]
