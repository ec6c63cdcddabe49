"""
Expose the FastAPI application instance.

Importing this module will create a FastAPI application and register
all routes.  Run it with Uvicorn directly or through the module entry
point:

```sh
python -m coderunner.api
```
"""

from .main import app, create_app

__all__ = ["app", "create_app"]
