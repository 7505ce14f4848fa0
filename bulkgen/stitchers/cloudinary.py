"""Cloudinary video splice stitcher.

Uploads each segment to Cloudinary by remote URL (signed upload), then builds
a delivery URL that splices the segments in order with ``fl_splice``
transformations. Cloudinary renders the concatenation lazily on first view,
so the artifact reference is available as soon as the uploads finish.

Security:
    - Signed uploads: SHA-1 over the sorted parameters plus the API secret
    - The API secret is never logged
"""

import asyncio
import hashlib
import time

import httpx

from bulkgen.stitchers.base import StitchError, StitchResult, Stitcher
from bulkgen.utils.logging import get_logger

log = get_logger(__name__)


def sign_params(params: dict[str, str], api_secret: str) -> str:
    """Cloudinary upload signature: sha1("k1=v1&k2=v2" + secret), keys sorted."""
    to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode()).hexdigest()


class CloudinaryStitcher(Stitcher):
    """Stitcher backed by Cloudinary uploads and splice transformations."""

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ) -> None:
        self.cloud_name = cloud_name
        self.api_key = api_key
        self._api_secret = api_secret
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.upload_url = f"https://api.cloudinary.com/v1_1/{cloud_name}/video/upload"

    async def _upload(self, segment_url: str, public_id: str) -> str:
        params = {"public_id": public_id, "timestamp": str(int(time.time()))}
        data = {
            **params,
            "file": segment_url,
            "api_key": self.api_key,
            "signature": sign_params(params, self._api_secret),
        }
        try:
            response = await self.client.post(self.upload_url, data=data)
        except httpx.HTTPError as e:
            raise StitchError(f"Cloudinary upload failed for {public_id}: {e}") from e
        if response.status_code >= 400:
            raise StitchError(
                f"Cloudinary upload failed for {public_id}: {response.text[:200]}"
            )
        return response.json()["public_id"]

    def splice_url(self, public_ids: list[str]) -> str:
        """Delivery URL playing ``public_ids`` back to back, first id first."""
        transformations: list[str] = []
        for public_id in public_ids[1:]:
            layer_id = public_id.replace("/", ":")
            transformations.append(f"fl_splice,l_video:{layer_id}")
            transformations.append("fl_layer_apply")
        path = "/".join(transformations)
        prefix = f"https://res.cloudinary.com/{self.cloud_name}/video/upload"
        if path:
            return f"{prefix}/{path}/{public_ids[0]}.mp4"
        return f"{prefix}/{public_ids[0]}.mp4"

    async def stitch(self, segments: list[str], target_key: str) -> StitchResult:
        if not segments:
            raise StitchError("No segments to stitch")

        log.info("cloudinary_stitch_start", target=target_key, segment_count=len(segments))
        public_ids = await asyncio.gather(
            *(
                self._upload(url, f"{target_key}_seg_{index}")
                for index, url in enumerate(segments)
            )
        )
        artifact_ref = self.splice_url(list(public_ids))
        log.info("cloudinary_stitch_success", target=target_key, artifact_ref=artifact_ref)
        return StitchResult(artifact_ref=artifact_ref, segment_count=len(segments))

    async def close(self) -> None:
        await self.client.aclose()
