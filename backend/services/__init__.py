from importlib import import_module

__all__ = [
    "EventBus",
    "WalletdRpcClient",
    "WalletdRpcError",
    "ScanCursorStore",
    "HealthMonitor",
    "ScanLoop",
    "WalletdSupervisor",
    "ConfigurationError",
    "WalletService",
]

_LAZY_EXPORTS = {
    "EventBus": ("services.event_bus", "EventBus"),
    "WalletdRpcClient": ("services.walletd_rpc", "WalletdRpcClient"),
    "WalletdRpcError": ("services.walletd_rpc", "WalletdRpcError"),
    "ScanCursorStore": ("services.cursor_store", "ScanCursorStore"),
    "HealthMonitor": ("services.health_monitor", "HealthMonitor"),
    "ScanLoop": ("services.scanner", "ScanLoop"),
    "WalletdSupervisor": ("services.supervisor", "WalletdSupervisor"),
    "ConfigurationError": ("services.supervisor", "ConfigurationError"),
    "WalletService": ("services.wallet_service", "WalletService"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
