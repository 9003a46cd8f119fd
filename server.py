import os
import logging

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Early environment loading BEFORE importing the app modules
try:
    here = os.path.dirname(os.path.abspath(__file__))
    load_dotenv(os.path.join(here, ".env"), override=False)
except Exception:
    pass

from deployops.api.run import router as run_router


app = FastAPI(title="DeployOps")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("DEPLOYOPS_CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Run-Id"],
)

app.include_router(run_router)

# Basic logger for server diagnostics (inherits uvicorn handlers)
logger = logging.getLogger("deployops.server")
if not logger.handlers:
    logger.setLevel(logging.INFO)


@app.get("/")
def read_root():
    return {"Hello": "DeployOps"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8081)
