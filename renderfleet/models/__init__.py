from renderfleet.models.base import Base
from renderfleet.models.render_job import RenderJobRecord

__all__ = [
    "Base",
    "RenderJobRecord",
]
