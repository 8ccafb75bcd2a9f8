import os

import uvicorn

from app.api import create_app

if __name__ == "__main__":
    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
