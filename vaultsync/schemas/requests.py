"""
Inbound sync requests.

These are deliberately lax: required-field checks that must surface as
the sync engine's own ValidationError (with no write attempted) happen
in the sync services, not here.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PropertySyncRequest(BaseModel):
    """Attributes of an asset whose registration/update is confirmed on the ledger."""
    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "domainId": "P1",
                "identity": "0x5B38Da6a701c568545dCfcB03FcB875f56beddC4",
                "name": "Villa",
                "locality": "Whitefield",
                "propertyType": "residential",
                "owner": "alice@x.com",
                "verified": False,
            }
        },
    )

    domain_id: str = Field(..., alias="domainId")
    identity: str = Field(..., description="Chain identity the transaction applied to")
    name: Optional[str] = None
    locality: Optional[str] = None
    property_type: Optional[str] = Field(default=None, alias="propertyType")
    owner: Optional[str] = None
    verified: bool = False


class DocumentSyncRequest(BaseModel):
    """A new document verification request."""
    model_config = ConfigDict(populate_by_name=True)

    domain_id: str = Field(..., alias="domainId")
    user_handle: str = Field(..., alias="userHandle")
    document_type: str = Field(..., alias="documentType")
