"""Tests for the Cloudinary splice stitcher."""

import hashlib
from urllib.parse import parse_qs

import httpx
import pytest

from bulkgen.stitchers.base import StitchError
from bulkgen.stitchers.cloudinary import CloudinaryStitcher, sign_params


def test_sign_params_sorts_keys():
    """[P1] Signature is sha1 over sorted k=v pairs plus the secret."""
    expected = hashlib.sha1(b"public_id=seg&timestamp=100secret").hexdigest()
    assert sign_params({"timestamp": "100", "public_id": "seg"}, "secret") == expected


def test_splice_url_keeps_segment_order():
    stitcher = CloudinaryStitcher("demo", "key", "secret")

    url = stitcher.splice_url(["a", "b", "folder/c"])

    assert url == (
        "https://res.cloudinary.com/demo/video/upload/"
        "fl_splice,l_video:b/fl_layer_apply/"
        "fl_splice,l_video:folder:c/fl_layer_apply/a.mp4"
    )


async def test_stitch_uploads_every_segment():
    """[P1] Each segment is uploaded by URL; the artifact splices them in order."""
    uploads: list[dict[str, list[str]]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        uploads.append(form)
        return httpx.Response(200, json={"public_id": form["public_id"][0]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    stitcher = CloudinaryStitcher("demo", "key", "secret", client=client)

    result = await stitcher.stitch(["https://v/0.mp4", "https://v/1.mp4"], "batch_x")

    assert result.segment_count == 2
    assert sorted(form["file"][0] for form in uploads) == ["https://v/0.mp4", "https://v/1.mp4"]
    assert all(form["api_key"] == ["key"] for form in uploads)
    assert result.artifact_ref.endswith("fl_splice,l_video:batch_x_seg_1/fl_layer_apply/batch_x_seg_0.mp4")
    await stitcher.close()


async def test_upload_failure_raises_stitch_error():
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(400, text="bad file"))
    )
    stitcher = CloudinaryStitcher("demo", "key", "secret", client=client)

    with pytest.raises(StitchError, match="bad file"):
        await stitcher.stitch(["https://v/0.mp4", "https://v/1.mp4"], "row_y")
