"""secretshop: a Gemini capsule server with a Gopher sidecar."""

__version__ = "0.1.0"
SOFTWARE = f"secretshop/{__version__}"
