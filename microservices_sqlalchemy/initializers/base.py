from fastapi import FastAPI

from microservices_sqlalchemy.core.config import AppEnvironment, Settings
from microservices_sqlalchemy.core.services import ServiceCollection


class MicroserviceInitializer:
    """
    Lifecycle hook plugged into `create_app`.

    `configure_services` runs while the app is built, before the provider
    exists. `configure` runs during lifespan startup, in registration order;
    an exception aborts startup.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def configure_services(self, services: ServiceCollection) -> None:
        pass

    async def configure(self, app: FastAPI, environment: AppEnvironment) -> None:
        pass
