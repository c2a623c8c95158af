from . import clients, health, metrics, vpn

__all__ = ["clients", "health", "metrics", "vpn"]
