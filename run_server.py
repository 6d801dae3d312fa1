"""Start the Call Intelligence server."""

import uvicorn

from callintel.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    print(f"Starting Call Intelligence on {settings.server_host}:{settings.server_port}")
    print(f"Webhook URL: http://localhost:{settings.server_port}/webhooks/vapi")
    print(f"Function URL: http://localhost:{settings.server_port}/vapi/functions")
    uvicorn.run(
        "callintel.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=True,
    )
