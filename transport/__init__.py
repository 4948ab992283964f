# transport package initializer
__all__ = ["connector", "endpoint"]
