"""prohtds: Prometheus HTTP service discovery backed by etcd leases."""

__version__ = '0.1.0'
