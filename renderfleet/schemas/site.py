from datetime import datetime

from pydantic import BaseModel, Field


class BucketInfo(BaseModel):
    name: str
    region: str


class StoredObject(BaseModel):
    path: str
    size: int
    md5: str | None = None  # hex digest
    updated_at: datetime | None = None


class ObjectDeletion(BaseModel):
    path: str
    size: int = 0
    deleted: bool
    error: str | None = None


class PrefixDeleteResult(BaseModel):
    prefix: str
    freed_bytes: int = 0
    results: list[ObjectDeletion] = Field(default_factory=list)

    @property
    def failed(self) -> list[ObjectDeletion]:
        return [r for r in self.results if not r.deleted]


class SiteInfo(BaseModel):
    site_id: str
    bucket: str
    region: str
    size_bytes: int
    serve_url: str
    last_modified: datetime | None = None


class SiteDeployResult(BaseModel):
    site: SiteInfo
    uploaded: int
    unchanged: int
    deleted: int
