"""
Prometheus HTTP Service Discovery over etcd

This package provides:
1. list_target_groups: reads registrations from etcd and builds target groups
2. ServiceKey / ServiceDef / TargetGroup: the registration and SD data model
3. make_discovery_server: binds the GET /services HTTP endpoint
"""

from .service_discovery import (
    DISCOVERY_PATH,
    DiscoveryHTTPServer,
    ServiceDef,
    ServiceKey,
    TargetGroup,
    describe_store_error,
    list_target_groups,
    make_discovery_server,
)

__all__ = [
    'DISCOVERY_PATH',
    'DiscoveryHTTPServer',
    'ServiceDef',
    'ServiceKey',
    'TargetGroup',
    'describe_store_error',
    'list_target_groups',
    'make_discovery_server',
]
