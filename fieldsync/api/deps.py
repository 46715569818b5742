"""Request-scoped access to the services built in the app lifespan."""

from fastapi import Request

from fieldsync.services.controller import SpbListController
from fieldsync.services.migration import GenerationMigrationService
from fieldsync.services.spb_repository import SpbRepository
from fieldsync.services.sync import FormSyncEngine


def get_engine(request: Request) -> FormSyncEngine:
    return request.app.state.engine


def get_migration_service(request: Request) -> GenerationMigrationService:
    return request.app.state.migration


def get_spb_repository(request: Request) -> SpbRepository:
    return request.app.state.spb_repository


def get_spb_controller(request: Request) -> SpbListController:
    return request.app.state.spb_controller
