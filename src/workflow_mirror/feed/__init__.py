"""Remote read model and change feed adapters.

The transport itself is external; this package only defines the messages it
delivers, how live subscriptions are shared, and a REST client for snapshots.
"""

__all__: list[str] = []
