"""Data models for provider-ready chat transcripts."""

from typing import Literal

from pydantic import BaseModel


class ImageURL(BaseModel):
    """Reference to an image the provider fetches itself."""
    url: str


class TextPart(BaseModel):
    """A text content part of a multimodal message."""
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """An image content part of a multimodal message."""
    type: Literal["image_url"] = "image_url"
    image_url: ImageURL

    @classmethod
    def from_url(cls, url: str) -> "ImagePart":
        return cls(image_url=ImageURL(url=url))


ContentPart = TextPart | ImagePart


class ChatMessage(BaseModel):
    """One role-tagged entry of a chat/completions transcript."""
    role: Literal["system", "user", "assistant"]
    content: str | list[ContentPart]

    @property
    def is_plain(self) -> bool:
        """True when the content is a plain string."""
        return isinstance(self.content, str)
