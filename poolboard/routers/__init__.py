"""Router package: registers the dashboard API routers on the FastAPI app."""

from fastapi import FastAPI

from poolboard.routers import (
    highest_diff,
    leaderboard,
    users,
)


def register_all_routers(app: FastAPI):
    app.include_router(highest_diff.router)
    app.include_router(leaderboard.router)
    app.include_router(users.router)
