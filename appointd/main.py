import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from appointd.core import config
from appointd.database import Base, engine, ensure_appointment_schema
from appointd.models import appointment, availability, notification, payment, user  # noqa: F401
from appointd.routes import appointment_routes, availability_routes, notification_routes, payment_routes
from appointd.services.notifications import dispatcher

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_appointment_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.on_event('shutdown')
def stop_notification_workers() -> None:
    dispatcher.shutdown(wait=True)


@app.get('/')
def root():
    return {'status': 'Appointment Service Running'}


app.include_router(availability_routes.router, prefix='/availability')
app.include_router(appointment_routes.router, prefix='/appointments')
app.include_router(payment_routes.router, prefix='/payments')
app.include_router(notification_routes.router, prefix='/notifications')
