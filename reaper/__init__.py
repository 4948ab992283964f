# reaper package initializer
__all__ = ["idle", "reaper"]
