"""
Entry point for the job admission limiter service.

This module creates the FastAPI application instance and starts the Uvicorn
ASGI server when executed directly.
"""

import uvicorn

import admission_service.server_factory
import configuration

application_configuration = configuration.ApplicationConfiguration()

fastapi_application = admission_service.server_factory.create_application(application_configuration)

if __name__ == "__main__":
    uvicorn.run(
        "main:fastapi_application",
        host=application_configuration.application_host,
        port=application_configuration.application_port,
        # Uvicorn records go through the JSON handler set up by
        # ``configure_logging`` instead of its own formatters.
        log_config=None,
    )
