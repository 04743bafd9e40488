from __future__ import annotations

from typing import List

from ..annotations.structures import PromptAnnotation
from .descriptors import PromptDescriptor


def build_prompts(annotation: PromptAnnotation) -> List[PromptDescriptor]:
    """One descriptor per prompt declared on a service."""
    return [
        PromptDescriptor(
            name=entry.name,
            title=entry.title,
            description=entry.description,
            template=entry.template,
            source=annotation.element.qualified_name,
            role=entry.role,
            inputs=entry.inputs,
        )
        for entry in annotation.prompts
    ]
