from fastapi import FastAPI
from .dependencies import engine
from .exceptions import ServiceError, service_error_handler
from .models import Base


def create_app() -> FastAPI:
    Base.metadata.create_all(bind=engine)

    app = FastAPI(title="Appointment System")
    app.add_exception_handler(ServiceError, service_error_handler)

    from .routes import router as main_router
    from .payment_routes import router as payment_router
    app.include_router(main_router)
    app.include_router(payment_router)

    return app
