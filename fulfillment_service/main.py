"""Main entry point for the Fulfillment Service."""

import uvicorn

from fulfillment_service.server import app

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
