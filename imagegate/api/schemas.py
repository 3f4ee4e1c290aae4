from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from imagegate.domain.requests.entities import RequestStatus
from imagegate.domain.requests.schemas import ImageRequestOut
from imagegate.tools.build_config import sanitize_custom_name


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubmitImageRequest(CamelModel):
    """
    Body of a new image request, as collected by the chat collaborator.
    """

    request_name: str = Field(
        min_length=1,
        max_length=200,
        description="Human readable name; the custom image name is derived from it"
    )

    base_repo: str = Field(
        min_length=1,
        description="Repository the customization is applied on top of"
    )

    packages: list[str] = Field(
        default_factory=list,
        description="Extra packages, in the order requested"
    )

    description: str = Field(default="", description="Purpose of the image")
    justification: str = Field(default="", description="Business justification")
    requester_id: str = Field(min_length=1, description="Chat user id of the requester")

    @field_validator("request_name")
    @classmethod
    def name_must_yield_image_name(cls, value: str) -> str:
        if not sanitize_custom_name(value):
            raise ValueError("request name must contain letters or digits")
        return value


class ApproveBody(CamelModel):
    approver_id: str = Field(min_length=1)


class RejectBody(CamelModel):
    approver_id: str = Field(min_length=1)
    reason: str = Field(default="", description="Shown to the requester")


class RequestFilters(BaseModel):
    """
    Query filters for listing requests.

    All fields are optional.
    """

    requester_id: Optional[str] = Field(default=None, description="Only requests by this user")
    status: Optional[RequestStatus] = Field(default=None, description="Only requests in this status")


class PackageOut(BaseModel):
    name: str
    version: str
    description: str = ""


class PackageSearchOut(CamelModel):
    search_term: str
    packages: list[PackageOut]
    total: int
    fallback: bool = False


__all__ = [
    "ApproveBody",
    "ImageRequestOut",
    "PackageOut",
    "PackageSearchOut",
    "RejectBody",
    "RequestFilters",
    "SubmitImageRequest",
]
