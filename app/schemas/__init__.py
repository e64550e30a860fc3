"""
app.schemas
~~~~~~~~~~~
Pydantic schemas and models for the API and the WebSocket wire protocol.
"""
from app.schemas.api_response import ApiResponse
from app.schemas.status import RoomInfoData, StatusData

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
