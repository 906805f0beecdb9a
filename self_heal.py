"""
Self-Healing Fleet Script.
Restores consistency between the binding table and every end-node.
1. Gives each provisioned user a binding on every node
2. Pushes each node's users to it
3. Reports nodes that could not be reached
"""
import asyncio
import logging
import sys

from vpn_control.audit import AuditLogger
from vpn_control.config import Settings
from vpn_control.database import Database
from vpn_control.errors import ConfigError
from vpn_control.fleet import FleetRegistry
from vpn_control.proxy import NodeClient
from vpn_control.worker import MemoryQueue


async def heal_fleet(registry: FleetRegistry) -> int:
    """Reconcile every registered node. Returns the number of nodes with push failures."""
    nodes = await registry.list()
    print(f"Found {len(nodes)} end-nodes.")

    unhealthy = 0
    for node in nodes:
        result = await registry.reconcile(node.name)
        print(f"  {node.name}: created={len(result.created)} existing={len(result.existing)} "
              f"pushed={result.pushed}")
        if result.push_failures:
            unhealthy += 1
            print(f"  {node.name}: failed to push {', '.join(result.push_failures)}")
    return unhealthy


async def main() -> int:
    print("--- Starting Fleet Self-Healing ---")
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    logging.basicConfig(level=settings.log_level.upper())
    db = Database(settings.database_url)
    nodes = NodeClient(timeout=settings.upstream_timeout)
    registry = FleetRegistry(db, nodes, MemoryQueue(), AuditLogger(db, settings.server_id))
    try:
        await db.init_db()
        unhealthy = await heal_fleet(registry)
    finally:
        await nodes.close()
        await db.dispose()

    if unhealthy:
        print(f"{unhealthy} end-node(s) still out of sync.")
        return 2
    print("Fleet is consistent.")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
