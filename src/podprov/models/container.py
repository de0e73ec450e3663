"""Container group and image reference models."""

from typing import List

from pydantic import BaseModel, Field


NAMESPACE_SEPARATOR = "/"


def expand_reference(group: str, ref: str, namespaced: bool) -> str:
    """Expand a bare image name into the group's namespace.

    A reference that already contains a namespace separator is returned
    unchanged, so expanding twice yields the same reference.
    """
    ref = ref.strip()
    if namespaced and NAMESPACE_SEPARATOR not in ref:
        return f"{group}{NAMESPACE_SEPARATOR}{ref}"
    return ref


class ContainerGroup(BaseModel):
    """Named collection of image references."""
    name: str = Field(..., description="Group key, e.g. 'mcp' or 'base'")
    images: List[str] = Field(default_factory=list)
    namespaced: bool = Field(default=False, description="Expand bare names to '<group>/<name>'")

    def expand(self, ref: str) -> str:
        """Expand a single reference according to this group's rule."""
        return expand_reference(self.name, ref, self.namespaced)

    def references(self) -> List[str]:
        """Expanded references in declared order, without duplicates."""
        seen = set()
        result = []
        for ref in self.images:
            expanded = self.expand(ref)
            if expanded not in seen:
                seen.add(expanded)
                result.append(expanded)
        return result
