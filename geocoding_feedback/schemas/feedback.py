"""Pydantic schemas for feedback API.

Defines request and response schemas for the feedback submission endpoint.
"""

from pydantic import BaseModel, Field, StrictInt
from typing import List, Optional


class FeedbackSubmission(BaseModel):
    """Request schema for submitting feedback on a geocoding response.

    Used for the POST /feedback endpoint.
    """

    request_id: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Identifier of the geocoding request the feedback refers to",
        examples=["d6f6bd9c-7c9c-4d67-9c5f-8d1f9cbe0a11"],
    )

    chosen_result_id: StrictInt = Field(
        ...,
        ge=0,
        description="Index of the geocoding result the user selected",
        examples=[3],
    )

    user_id: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Identifier of the user submitting feedback; must end with an accepted suffix",
        examples=["user1@mycompany.net"],
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "request_id": "d6f6bd9c-7c9c-4d67-9c5f-8d1f9cbe0a11",
                    "chosen_result_id": 3,
                    "user_id": "user1@mycompany.net",
                }
            ]
        }
    }


class ValidationError(BaseModel):
    """Individual field validation error."""

    field: str = Field(..., description="Field name that failed validation")
    message: str = Field(..., description="Error message describing the validation failure")


class ErrorResponse(BaseModel):
    """Response schema for error cases (400, 404, 5xx)."""

    status: str = Field(
        ...,
        pattern="^error$",
        description="Always 'error' for error responses",
        examples=["error"],
    )

    error: str = Field(
        ...,
        description="Error message",
        examples=["Validation error", "The current request was not found"],
    )

    details: Optional[List[ValidationError]] = Field(
        default=None,
        description="Specific validation errors (only present for 400 responses)",
    )
