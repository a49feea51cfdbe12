"""Feedback submission API endpoint.

Receives the result a user picked for a previous geocoding request and hands
it to the correlator, which claims the cached response and publishes the
feedback record to Kafka.
"""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse

from geocoding_feedback.lib.exceptions import (
    NotFoundError,
    OperationTimeoutError,
    ValidationError,
)
from geocoding_feedback.lib.feedback.correlator import Correlator
from geocoding_feedback.schemas.feedback import ErrorResponse, FeedbackSubmission

logger = logging.getLogger(__name__)

router = APIRouter()


def get_correlator(request: Request) -> Correlator:
    """Return the correlator built during application startup."""
    return request.app.state.correlator


def _error(status_code: int, error: str, field: Optional[str] = None) -> JSONResponse:
    content = {"status": "error", "error": error}
    if field is not None:
        content["details"] = [{"field": field, "message": error}]
    return JSONResponse(status_code=status_code, content=content)


@router.post(
    "/feedback",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    responses={
        400: {"model": ErrorResponse, "description": "Validation error in input"},
        404: {"model": ErrorResponse, "description": "Request id unknown, expired or already used"},
        500: {"model": ErrorResponse, "description": "Store or broker failure"},
        504: {"model": ErrorResponse, "description": "Store did not answer in time"},
    },
    summary="Submit feedback for a geocoding response",
)
async def create_feedback(
    submission: FeedbackSubmission,
    correlator: Annotated[Correlator, Depends(get_correlator)],
    x_api_key: Annotated[Optional[str], Header()] = None,
    token: Annotated[Optional[str], Query()] = None,
) -> Response:
    """Claim the geocoding response for ``request_id`` with the user's choice.

    The api key comes from the ``x-api-key`` header, or the ``token`` query
    parameter when the header is absent.
    """
    api_key = x_api_key or token

    try:
        await correlator.claim_explicit(
            request_id=submission.request_id,
            user_id=submission.user_id,
            api_key=api_key,
            chosen_result_id=submission.chosen_result_id,
        )
    except ValidationError as e:
        logger.warning('Validation error in feedback submission: %s', str(e))
        return _error(status.HTTP_400_BAD_REQUEST, str(e), field=e.details.get("field"))
    except NotFoundError as e:
        return _error(status.HTTP_404_NOT_FOUND, str(e))
    except OperationTimeoutError as e:
        logger.error('Timed out handling feedback for %s: %s', submission.request_id, e)
        return _error(status.HTTP_504_GATEWAY_TIMEOUT, "Timed out waiting for the store")
    except Exception as e:
        logger.error(
            'Failed to process feedback for %s: %s', submission.request_id, str(e), exc_info=True,
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to process feedback")

    return Response(status_code=status.HTTP_204_NO_CONTENT)
