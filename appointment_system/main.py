import sys
import argparse
import time

import uvicorn
from fastapi import Request
from prometheus_client import Counter, Histogram
from sqlalchemy import create_engine
from alembic import command
from alembic.config import Config
import os
import logging
from prometheus_fastapi_instrumentator import Instrumentator
from .app import create_app
from .app.auth import get_password_hash
from .app.dependencies import DATABASE_URL, SessionLocal, get_redis_client, UserRole
from .app.models import Base, User
from .app.reconciliation import reconcile_failed_refunds

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

app = create_app()

# Custom Prometheus metrics for specific routes
ROUTE_REQUEST_COUNT = Counter("route_request_count", "Total number of requests per route", ["method", "endpoint"])
ROUTE_REQUEST_LATENCY = Histogram("route_request_latency_seconds", "Request latency in seconds per route", ["method", "endpoint"])


# Middleware to track custom metrics
@app.middleware("http")
async def add_metrics(request: Request, call_next):
    start_time = time.time()

    # Process the request
    response = await call_next(request)

    # Update custom metrics
    ROUTE_REQUEST_COUNT.labels(method=request.method, endpoint=request.url.path).inc()
    ROUTE_REQUEST_LATENCY.labels(method=request.method, endpoint=request.url.path).observe(time.time() - start_time)

    return response


# Instrument the app with Prometheus metrics
Instrumentator().instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")


def start_server():
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))


def create_tables():
    print(f"Using database URL: {DATABASE_URL}")
    engine = create_engine(DATABASE_URL)
    Base.metadata.create_all(engine)
    print("Database tables created successfully.")


def run_migrations(action, revision=None, message=None):
    # Inline Alembic configuration
    alembic_cfg = Config()
    alembic_cfg.set_main_option('sqlalchemy.url', DATABASE_URL)
    alembic_cfg.set_main_option('script_location',
                                'alembic')  # Adjust this if your migrations are in a different directory

    if action == "upgrade":
        command.upgrade(alembic_cfg, "head")
    elif action == "downgrade":
        if not revision:
            print("Please specify a revision to downgrade to.")
            return
        command.downgrade(alembic_cfg, revision)
    elif action == "revision":
        if not message:
            print("Please provide a message for the migration.")
            return
        command.revision(alembic_cfg, autogenerate=True, message=message)
    elif action == "current":
        command.current(alembic_cfg)
    else:
        print("Invalid action specified for migrations.")


def create_admin(email, password, name):
    db = SessionLocal()
    try:
        if db.query(User).filter(User.email == email).first():
            print(f"User {email} already exists.")
            return
        db.add(User(name=name, email=email, hashed_password=get_password_hash(password),
                    role=UserRole.ADMIN.value))
        db.commit()
        print(f"Admin {email} created successfully.")
    finally:
        db.close()


def reconcile_refunds():
    reconciled, still_failing, skipped = reconcile_failed_refunds()
    print(f"Refunds reconciled: {reconciled}, still failing: {still_failing}, skipped: {skipped}")


def clear_redis_cache():
    redis_client = get_redis_client()
    redis_client.flushall()
    print("Redis locks and webhook keys cleared successfully.")


def main():
    parser = argparse.ArgumentParser(description="Appointment System Application")
    parser.add_argument(
        '--mode',
        type=str,
        choices=['server', 'create-tables', 'migrate', 'create-admin', 'reconcile-refunds', 'clear-cache'],
        required=True,
        help="Mode to run the application in. Choices are 'server' to start the FastAPI server, 'create-tables' to create the database tables, 'migrate' to manage database migrations, 'create-admin' to provision an admin account, 'reconcile-refunds' to retry failed gateway refunds, or 'clear-cache' to clear all Redis keys."
    )

    parser.add_argument(
        '--action',
        type=str,
        choices=['upgrade', 'downgrade', 'revision', 'current'],
        help="Action to perform with Alembic migrations. Required if mode is 'migrate'."
    )

    parser.add_argument(
        '--revision',
        type=str,
        help="Specify the revision for downgrade or other Alembic commands where needed."
    )

    parser.add_argument(
        '--message',
        type=str,
        help="Message to use with the 'revision' action in Alembic."
    )

    parser.add_argument('--email', type=str, help="Admin email. Required if mode is 'create-admin'.")
    parser.add_argument('--password', type=str, help="Admin password. Required if mode is 'create-admin'.")
    parser.add_argument('--name', type=str, default="Administrator", help="Admin display name.")

    args = parser.parse_args()

    if args.mode == 'server':
        start_server()
    elif args.mode == 'create-tables':
        create_tables()
    elif args.mode == 'migrate':
        if not args.action:
            print("Please specify an action for the 'migrate' mode.")
        else:
            run_migrations(args.action, args.revision, args.message)
    elif args.mode == 'create-admin':
        if not args.email or not args.password:
            print("Please specify --email and --password for the 'create-admin' mode.")
        else:
            create_admin(args.email, args.password, args.name)
    elif args.mode == 'reconcile-refunds':
        reconcile_refunds()
    elif args.mode == 'clear-cache':
        clear_redis_cache()


if __name__ == "__main__":
    main()
