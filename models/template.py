"""Message template model."""

import uuid

from pydantic import BaseModel, Field


class Template(BaseModel):
    """A named, operator-authored message template.

    ``content`` is the Jinja body rendered against a batch context;
    ``subject`` is optional and is itself rendered as a one-line template.
    Compilation is checked by the catalog before a template is stored.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = Field(min_length=1)
    subject: str = Field(default="", description="Subject line template (optional)")
    content: str = Field(description="Body template")
    is_default: bool = Field(default=False, description="Used when a task names no template")
