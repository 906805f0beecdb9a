import pytest

from self_heal import heal_fleet


@pytest.mark.asyncio
async def test_heal_fleet_brings_every_node_to_parity(db, registry, endnode):
    for server_id, host in (("node-eu-1", "10.0.1.1"), ("node-us-1", "10.0.2.1"), ("node-ap-1", "10.0.3.1")):
        await db.upsert_endnode(server_id, host, 8080, "online")
    await db.create_binding("alice", "node-eu-1", 1194, "udp")
    await db.create_binding("bob", "node-us-1", 443, "tcp")

    unhealthy = await heal_fleet(registry)

    assert unhealthy == 0
    for server_id in ("node-eu-1", "node-us-1", "node-ap-1"):
        assert {b.username for b in await db.list_bindings(server_id=server_id)} == {"alice", "bob"}
    assert (await db.get_binding("bob", "node-ap-1")).protocol == "tcp"


@pytest.mark.asyncio
async def test_heal_fleet_reports_unreachable_nodes(db, registry, endnode):
    await db.upsert_endnode("node-eu-1", "10.0.1.1", 8080, "online")
    await db.create_binding("alice", "node-eu-1", 1194, "udp")
    endnode.down = True

    assert await heal_fleet(registry) == 1
