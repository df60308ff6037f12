"""Fan-out render orchestration over Cloud Run workers."""

__version__ = "0.1.0"
