"""OverlayPayload model definition"""
from typing import List
from pydantic import BaseModel, ConfigDict, Field


class OverlayPayload(BaseModel):
    """
    Message pushed to every overlay connected for a streamer.

    Attributes:
        type: Always "overlay" for donation alerts
        amount: Human formatted token amount, e.g. "1,234.5"
        donorAddress: Donor wallet, lower-case
        donorName: Donor display name or "Anonymous"
        message: Donor message, empty when none was submitted
        sounds: Audio URLs to play in order
        streamerName: Recipient display name
        tokenSymbol / tokenLogo: Display metadata of the input token
        txHash: Transaction that carried the donation
        mediaType / mediaUrl / mediaDuration: Optional attached media
        usdValue: Fiat value computed by the web application
    """
    model_config = ConfigDict(populate_by_name=True)

    type: str = "overlay"
    amount: str
    donorAddress: str = ""
    donorName: str = "Anonymous"
    message: str = ""
    sounds: List[str] = Field(default_factory=list)
    streamerName: str = ""
    tokenSymbol: str = ""
    tokenLogo: str = ""
    txHash: str
    mediaType: str = "TEXT"
    mediaUrl: str = ""
    mediaDuration: int = 0
    usdValue: float = 0.0
