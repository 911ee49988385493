"""Request model for the knowledge-base question answering API."""

from pydantic import BaseModel, Field


class KnowledgeQARequest(BaseModel):
    """Represents the JSON body of ``POST /knowledge-qa``.

    ``history`` holds the prior user/assistant turns as ``{role,
    content}`` pairs; system messages never appear in it.  The query must
    be a non-empty string.
    """

    query: str = Field(..., min_length=1, description="The user's question.")
    model: str = Field(default="qa", description="Model used to answer.")
    kb_name: str = Field(default="default", description="Knowledge base to search.")
    use_kb: bool = Field(default=True, description="Whether to ground the answer in the knowledge base.")
    history: list[dict[str, str]] = Field(
        default_factory=list,
        description="Earlier turns of the conversation.",
    )
    stream: bool = Field(default=True, description="Request a server-sent event stream.")
