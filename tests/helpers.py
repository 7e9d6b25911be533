async def create_doc(client, title: str, slug: str | None = None, **extra):
    payload = {"title": title, **extra}
    if slug is not None:
        payload["slug"] = slug
    resp = await client.post("/api/docs", json=payload)
    resp.raise_for_status()
    return resp.json()


async def create_container(client, doc_id: str, label: str, **extra):
    resp = await client.post(f"/api/docs/{doc_id}/containers", json={"label": label, **extra})
    resp.raise_for_status()
    return resp.json()


async def create_item(client, container_id: str, label: str, **extra):
    resp = await client.post(f"/api/docs/containers/{container_id}/items", json={"label": label, **extra})
    resp.raise_for_status()
    return resp.json()


async def create_page(client, doc_id: str, title: str, **extra):
    resp = await client.post(f"/api/docs/{doc_id}/pages", json={"title": title, **extra})
    resp.raise_for_status()
    return resp.json()


async def publish(client, page_id: str):
    resp = await client.put(f"/api/docs/pages/{page_id}", json={"status": "published"})
    resp.raise_for_status()
    return resp.json()["page"]


async def build_nav(client, doc_id: str):
    """Dropdown > Item > Section, the usual top of a docs navigation."""
    dropdown = await create_container(client, doc_id, "Guides")
    item = await create_item(client, dropdown["id"], "User Guide")
    section = await create_container(client, doc_id, "Getting Started", item_id=item["id"])
    return dropdown, item, section
