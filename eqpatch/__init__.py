"""eqpatch: manifest-driven file patcher for game client directories."""

__version__ = "0.1.0"

__all__ = ["__version__"]
