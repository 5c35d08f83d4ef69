from .connectivity import ConnectivityMonitor, interfaces_up

__all__ = ['ConnectivityMonitor', 'interfaces_up']
