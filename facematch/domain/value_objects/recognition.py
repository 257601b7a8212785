"""Face recognition value objects."""
from pydantic import BaseModel, Field


class ReferenceMatch(BaseModel):
    """Best agreement between a face and a person's reference embeddings."""
    distance: float = Field(..., description="Model-native observation distance (lower is closer)")
    similarity: float = Field(..., description="Cosine similarity of the raw vectors")

    def is_better_than(self, other: "ReferenceMatch") -> bool:
        """Order matches by distance, then by similarity."""
        if self.distance != other.distance:
            return self.distance < other.distance
        return self.similarity > other.similarity
