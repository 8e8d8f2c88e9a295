"""
Orders domain package.

Public API:
- Domain models: Order, OrderStatus, Location, DropoffTarget, StatusChange
- Clustering entry: build_clusters (see orders.clustering)
"""
from .models import DropoffTarget, Location, Order, OrderStatus, StatusChange

__all__ = ["Order",
           "OrderStatus",
             "Location",
               "DropoffTarget",
               "StatusChange",
               ]
