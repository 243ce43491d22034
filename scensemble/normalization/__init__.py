from .log import log_normalize, size_factors

__all__ = ["log_normalize", "size_factors"]
