"""Pydantic request models for the REST API."""

from pydantic import BaseModel


class RegisterAccountRequest(BaseModel):
    phone_number: str
    user_id: str = ""
    access_token: str = ""
    username: str = ""
