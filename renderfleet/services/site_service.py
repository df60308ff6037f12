"""Deploy, list and delete site bundles in the artifact store.

A site is a static bundle (``index.html`` plus assets) stored under
``sites/<site_id>/``; workers render from its public URL.
"""

import asyncio
import hashlib
import logging
from pathlib import Path

from renderfleet.exceptions import InvalidConfigError, NotFoundError
from renderfleet.schemas.site import PrefixDeleteResult, SiteDeployResult, SiteInfo
from renderfleet.services.naming import make_site_id, site_prefix, validate_site_name
from renderfleet.services.storage_service import ArtifactStore

logger = logging.getLogger(__name__)

SITES_ROOT = "sites/"
SITE_ENTRYPOINT = "index.html"


def _md5(path: Path) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(block)
    return digest.hexdigest()


class SiteService:
    def __init__(self, store: ArtifactStore) -> None:
        self.store = store

    def serve_url(self, site_id: str, region: str | None = None) -> str:
        return self.store.public_url(f"{site_prefix(site_id)}{SITE_ENTRYPOINT}", region=region)

    def deploy_site(
        self,
        bundle_dir: str,
        region: str | None = None,
        site_name: str | None = None,
    ) -> SiteDeployResult:
        """Upload a bundle, skipping unchanged files and removing stale ones."""
        root = Path(bundle_dir)
        if not root.is_dir():
            raise InvalidConfigError(f"Bundle directory does not exist: {bundle_dir}", field="bundle_dir")
        site_id = validate_site_name(site_name) if site_name else make_site_id()
        prefix = site_prefix(site_id)
        bucket = self.store.get_or_create_bucket(region)

        remote = {obj.path: obj for obj in self.store.get_object_list(prefix, region=region)}
        local_files = sorted(p for p in root.rglob("*") if p.is_file())

        uploaded = unchanged = 0
        seen: set[str] = set()
        for local_path in local_files:
            key = prefix + local_path.relative_to(root).as_posix()
            seen.add(key)
            existing = remote.get(key)
            if existing is not None and existing.md5 == _md5(local_path):
                unchanged += 1
                continue
            self.store.upload_file(str(local_path), key, region=region)
            uploaded += 1

        deleted = 0
        for key in remote.keys() - seen:
            self.store.delete_object(key, region=region)
            deleted += 1

        logger.info(
            f"[SITE] Deployed {site_id} to {bucket.name}: "
            f"{uploaded} uploaded, {unchanged} unchanged, {deleted} deleted"
        )
        objects = self.store.get_object_list(prefix, region=region)
        site = self._site_info(site_id, objects, bucket, region)
        return SiteDeployResult(site=site, uploaded=uploaded, unchanged=unchanged, deleted=deleted)

    def _site_info(self, site_id: str, objects: list, bucket, region: str | None) -> SiteInfo:
        stamps = [o.updated_at for o in objects if o.updated_at]
        return SiteInfo(
            site_id=site_id,
            bucket=bucket.name,
            region=bucket.region,
            size_bytes=sum(o.size for o in objects),
            serve_url=self.serve_url(site_id, region),
            last_modified=max(stamps) if stamps else None,
        )

    def list_sites(self, region: str | None = None) -> list[SiteInfo]:
        bucket = self.store.get_or_create_bucket(region)
        grouped: dict[str, list] = {}
        for obj in self.store.get_object_list(SITES_ROOT, region=region):
            site_id = obj.path[len(SITES_ROOT):].split("/", 1)[0]
            if site_id:
                grouped.setdefault(site_id, []).append(obj)

        return [self._site_info(site_id, objects, bucket, region) for site_id, objects in sorted(grouped.items())]

    def delete_site(self, site_id: str, region: str | None = None) -> PrefixDeleteResult:
        """Delete every object of a site. Best-effort per object."""
        result = self.store.delete_all_under_prefix(site_prefix(site_id), region=region)
        if not result.results:
            raise NotFoundError(f"site {site_id}")
        logger.info(f"[SITE] Deleted {site_id}: freed {result.freed_bytes} bytes")
        return result

    def resolve_serve_url(self, site: str, region: str | None = None) -> str:
        """Accept either a site id or an already-public URL."""
        if site.startswith(("http://", "https://")):
            return site
        if not self.store.get_object_list(site_prefix(site), region=region):
            raise NotFoundError(f"site {site}")
        return self.serve_url(site, region)

    async def resolve_serve_url_async(self, site: str, region: str | None = None) -> str:
        return await asyncio.to_thread(self.resolve_serve_url, site, region)
