"""
Search Routes

Retrieval without generation: embeds the query with the configured embedding
model and returns the most similar stored chunks. Useful for inspecting what
context a chat turn would be grounded on.
"""

from typing import Annotated, List

from fastapi import APIRouter, Depends, status

from .dependencies import get_retriever
from .models import SearchRequest, SearchResult
from ..retrieval.retriever import Retriever

router = APIRouter(prefix="/search", tags=["search"])


@router.post(
    "",
    response_model=List[SearchResult],
    summary="Similarity search over ingested chunks",
    status_code=status.HTTP_200_OK,
)
async def search(
    req: SearchRequest,
    retriever: Annotated[Retriever, Depends(get_retriever)],
) -> List[SearchResult]:
    """
    Perform a similarity search over the knowledge base.

    Parameters
    ----------
    req : SearchRequest
        Contains:
        - query: Search query string
        - top_k: Maximum number of results (default from settings)
        - threshold: Minimum similarity (default from settings)

    Returns
    -------
    List[SearchResult]
        Matches ordered by similarity, most similar first. Empty when nothing
        clears the threshold.
    """
    matches = await retriever.retrieve(
        req.query,
        top_k=req.top_k,
        threshold=req.threshold,
    )

    return [
        SearchResult(
            content=match.content,
            source_id=match.source_id,
            similarity=match.similarity,
            metadata=match.metadata or {},
        )
        for match in matches
    ]
