import io

import pytest
from PIL import Image

from tilescale.main import app


async def _submit(client, data: bytes, filename: str = "gradient.png"):
    response = await client.post(
        "/api/v1/conversions",
        files={"file": (filename, data, "image/png")}
    )
    await app.state.conversions.wait_all()
    return response


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["upscaler_backend"] == "passthrough"


@pytest.mark.asyncio
async def test_conversion_completes(client, gradient, png_bytes):
    response = await _submit(client, png_bytes(gradient(96, 96)))
    assert response.status_code == 201
    conversion_id = response.json()["id"]
    assert response.json()["filename"] == "gradient.png"

    response = await client.get(f"/api/v1/conversions/{conversion_id}")
    assert response.status_code == 200
    data = response.json()
    assert data["all_finished"] is True
    assert data["running"] is False
    assert data["can_close"] is True
    assert [s["stage"] for s in data["stages"]] == ["load", "scale2x", "upscale"]
    assert all(s["status"] == "success" for s in data["stages"])

    upscale = data["stages"][2]
    assert (upscale["width"], upscale["height"]) == (192, 192)
    assert upscale["upscale"]["progress"] == 100.0
    assert (upscale["upscale"]["rows"], upscale["upscale"]["cols"]) == (6, 6)
    assert all(tile["status"] == "success" for row in upscale["upscale"]["tiles"] for tile in row)


@pytest.mark.asyncio
async def test_stage_image_and_preview(client, gradient, png_bytes):
    response = await _submit(client, png_bytes(gradient(40, 24, channels=3)))
    conversion_id = response.json()["id"]

    response = await client.get(f"/api/v1/conversions/{conversion_id}/stages/upscale/image")
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert Image.open(io.BytesIO(response.content)).size == (80, 48)

    response = await client.get(f"/api/v1/conversions/{conversion_id}/preview")
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"


@pytest.mark.asyncio
async def test_conversions_are_listed_newest_first(client, gradient, png_bytes):
    first = (await _submit(client, png_bytes(gradient(8, 8)), filename="a.png")).json()["id"]
    second = (await _submit(client, png_bytes(gradient(8, 8)), filename="b.png")).json()["id"]

    response = await client.get("/api/v1/conversions")
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert [c["id"] for c in data["conversions"]] == [second, first]


@pytest.mark.asyncio
async def test_select_stage(client, gradient, png_bytes):
    conversion_id = (await _submit(client, png_bytes(gradient(8, 8)))).json()["id"]

    response = await client.put(
        f"/api/v1/conversions/{conversion_id}/selected-stage",
        json={"stage": "scale2x"}
    )
    assert response.status_code == 200
    assert response.json()["selected_stage"] == "scale2x"

    response = await client.put(
        f"/api/v1/conversions/{conversion_id}/selected-stage",
        json={"stage": "sharpen"}
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_close_conversion(client, gradient, png_bytes):
    conversion_id = (await _submit(client, png_bytes(gradient(8, 8)))).json()["id"]

    response = await client.delete(f"/api/v1/conversions/{conversion_id}")
    assert response.status_code == 204

    response = await client.get(f"/api/v1/conversions/{conversion_id}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_invalid_image_fails_in_load_stage(client):
    response = await _submit(client, b"definitely not a png", filename="notes.txt")
    assert response.status_code == 201
    conversion_id = response.json()["id"]

    data = (await client.get(f"/api/v1/conversions/{conversion_id}")).json()
    load, scale2x, upscale = data["stages"]
    assert load["status"] == "failure"
    assert load["error"]
    assert scale2x["status"] is None
    assert upscale["status"] is None
    assert data["all_finished"] is False

    response = await client.get(f"/api/v1/conversions/{conversion_id}/stages/load/image")
    assert response.status_code == 404

    response = await client.get(f"/api/v1/conversions/{conversion_id}/preview")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_empty_upload_is_rejected(client):
    response = await client.post(
        "/api/v1/conversions",
        files={"file": ("empty.png", b"", "image/png")}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unknown_conversion(client):
    response = await client.get("/api/v1/conversions/doesnotexist")
    assert response.status_code == 404
    data = response.json()
    assert data["code"] == 404
    assert "doesnotexist" in data["error"]


@pytest.mark.asyncio
async def test_metrics_endpoint(client, gradient, png_bytes):
    await _submit(client, png_bytes(gradient(8, 8)))

    response = await client.get("/api/v1/metrics")
    assert response.status_code == 200
    assert "tilescale_conversions_total" in response.text
