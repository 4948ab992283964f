# rpc package initializer
__all__ = ["correlator", "errors", "protocol"]
