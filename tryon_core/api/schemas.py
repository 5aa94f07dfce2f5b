"""
Request bodies for the job API.

Fields use camelCase aliases on the wire and snake_case in Python.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CreateJobRequest(_CamelModel):
    store_id: str = Field(..., alias="storeId", min_length=1)
    person_image_url: str = Field(..., alias="personImageUrl", min_length=1)
    product_ids: List[str] = Field(..., alias="productIds", min_length=1)
    options: Dict[str, Any] = Field(default_factory=dict)
    customer_id: Optional[str] = Field(None, alias="customerId")
    customer_name: Optional[str] = Field(None, alias="customerName")

    @field_validator("store_id", "person_image_url")
    @classmethod
    def not_blank(cls, v):
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("product_ids")
    @classmethod
    def ids_not_blank(cls, v):
        if any(not p.strip() for p in v):
            raise ValueError("product ids must not be blank")
        return [p.strip() for p in v]


class CompleteJobRequest(_CamelModel):
    image_url: str = Field(..., alias="imageUrl", min_length=1)
    composition_id: Optional[str] = Field(None, alias="compositionId")
    scene_image_urls: List[str] = Field(default_factory=list, alias="sceneImageUrls")
    total_cost: Optional[float] = Field(None, alias="totalCost")
    processing_time: Optional[float] = Field(None, alias="processingTime")
    api_cost: Optional[float] = Field(None, alias="apiCost")


class FailJobRequest(_CamelModel):
    error: str = Field(..., min_length=1)
    error_details: Optional[Dict[str, Any]] = Field(None, alias="errorDetails")
