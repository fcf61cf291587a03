"""Two sites: what one exports, the other imports and exports back unchanged."""

from __future__ import annotations

import pytest

from contentsync.policy.models import Action
from contentsync.storage import StatusFlag


async def _populate(site):
    tag = await site.create("taxonomy_term", "tags", "t-1", "News", description=[{"value": "All news"}])
    logo = await site.create(
        "file",
        "file",
        "f-1",
        "logo.png",
        uri=[{"value": "public://logo.png"}],
        filemime=[{"value": "image/png"}],
    )
    await site.store.write_file("public://logo.png", b"\x89PNG")
    node = await site.create(
        "node",
        "article",
        "n-1",
        "Hello",
        body=[{"value": "<p>Hi</p>", "summary": ""}],
        tags=[{"target_id": tag.id}],
        image=[{"target_id": logo.id, "alt": "Logo"}],
    )
    await site.create(
        "menu_link_content",
        "menu_link_content",
        "m-1",
        "Home",
        link=[{"uri": f"entity:node/{node.id}", "title": "Home"}],
        menu_name=[{"value": "main"}],
    )
    await site.create(
        "view",
        "view",
        "v-1",
        "Frontpage",
        entity_id="frontpage",
        description=[{"value": "Front page listing"}],
        display=[{"value": {"default": {"pager": 10}}}],
    )


async def _export_all(site) -> list[dict]:
    """Export the node, the menu link and the view; dependencies follow on their own."""
    before = len(site.pushes())
    for entity_type, uuid in (("node", "n-1"), ("menu_link_content", "m-1"), ("view", "v-1")):
        entity = await site.store.load_by_uuid(entity_type, uuid)
        results = await site.engine.export_entity(entity)
        assert all(r.succeeded for r in results), results
    return site.pushes()[before:]


async def _replay(pushes: list[dict], target) -> None:
    for push in pushes:
        result = await target.engine.import_entity(
            "main", push["entity_type"], push["bundle"], push["body"] or {"uuid": push["uuid"]}, action=push["action"]
        )
        assert result.succeeded, result


def _bodies(pushes: list[dict]) -> dict[str, dict]:
    return {p["uuid"]: p["body"] for p in pushes}


@pytest.mark.asyncio()
async def test_export_order(site):
    await _populate(site)
    pushes = await _export_all(site)
    assert [p["uuid"] for p in pushes] == ["t-1", "f-1", "n-1", "m-1", "v-1"]


@pytest.mark.asyncio()
async def test_reexport_from_receiving_site_is_identical(site, remote_site):
    await _populate(site)
    sent = await _export_all(site)

    await _replay(sent, remote_site)
    echoed = await _export_all(remote_site)

    assert [p["uuid"] for p in echoed] == [p["uuid"] for p in sent]
    assert _bodies(echoed) == _bodies(sent)
    assert await remote_site.store.read_file("public://logo.png") == b"\x89PNG"


@pytest.mark.asyncio()
async def test_receiving_site_is_not_the_source(site, remote_site):
    await _populate(site)
    await _replay(await _export_all(site), remote_site)
    await _export_all(remote_site)

    origin = await site.ledger.find("node", "n-1", "content", "main")
    copy = await remote_site.ledger.find("node", "n-1", "content", "main")
    assert origin.has(StatusFlag.IS_SOURCE_ENTITY)
    assert not copy.has(StatusFlag.IS_SOURCE_ENTITY)
    assert copy.last_import is not None
    assert copy.last_export is not None


@pytest.mark.asyncio()
async def test_reverse_arrival_order_converges(site, make_site):
    await _populate(site)
    sent = await _export_all(site)

    reversed_site = await make_site(name="reversed")
    await _replay(list(reversed(sent)), reversed_site)

    assert await reversed_site.engine.dependencies.pending() == []
    echoed = await _export_all(reversed_site)
    assert _bodies(echoed) == _bodies(sent)


@pytest.mark.asyncio()
async def test_deletion_travels(site, remote_site):
    await _populate(site)
    await _replay(await _export_all(site), remote_site)

    link = await site.store.load_by_uuid("menu_link_content", "m-1")
    [result] = await site.engine.export_entity(link, action=Action.DELETE)
    assert result.succeeded
    await site.store.delete(link)

    await _replay(site.pushes()[-1:], remote_site)

    assert await remote_site.store.load_by_uuid("menu_link_content", "m-1") is None
    status = await remote_site.ledger.find("menu_link_content", "m-1", "content", "main")
    assert status.is_deleted


@pytest.mark.asyncio()
async def test_update_travels(site, remote_site):
    await _populate(site)
    await _replay(await _export_all(site), remote_site)

    node = await site.store.load_by_uuid("node", "n-1")
    node.label = "Hello again"
    await site.store.save(node)
    [result] = await site.engine.export_entity(node)
    assert result.action == Action.UPDATE

    await _replay(site.pushes()[-1:], remote_site)
    assert (await remote_site.store.load_by_uuid("node", "n-1")).label == "Hello again"


@pytest.mark.asyncio()
async def test_url_alias_travels_without_local_ids(site, remote_site):
    for side in (site, remote_site):
        side.store.schema("node", "article").add("path", "path")
    alias = {"alias": "/hello", "langcode": "en"}
    node = await site.create("node", "article", "n-1", "Hello", path=[{**alias, "pid": 7, "source": "/node/1"}])

    [result] = await site.engine.export_entity(node)
    assert result.succeeded
    assert site.pushes()[-1]["body"]["path"] == [alias]

    await _replay(site.pushes(), remote_site)
    assert (await remote_site.store.load_by_uuid("node", "n-1")).get("path") == [alias]
