from typing import Any, Dict, Optional

from repo_reconciler.domain.models import FieldValue, RemoteMetadata

# Domain field name -> GitHub REST repository attribute (PATCH /repos/{owner}/{repo})
PATCHABLE_FIELDS = {
    "homepage_url": "homepage",
    "description": "description",
}


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    # GitHub reports a cleared homepage/description as either null or "".
    return value if value else None


class GitHubTranslator:
    """
    Anti-corruption layer between raw GitHub REST JSON and the reconciler's domain models.
    """

    @staticmethod
    def to_domain(raw_repo: Dict[str, Any]) -> RemoteMetadata:
        """
        Transforms a raw GitHub repository object into RemoteMetadata.

        Args:
            raw_repo (Dict[str, Any]): The JSON body of GET /repos/{owner}/{repo}.

        Returns:
            RemoteMetadata: The domain model instance representing the live repository state.
        """
        full_name = raw_repo.get('full_name')
        if not full_name:
            raise ValueError("full_name is required to build RemoteMetadata.")

        return RemoteMetadata(
            identifier=full_name,
            name=raw_repo.get('name', ''),
            homepage_url=_blank_to_none(raw_repo.get('homepage')),
            description=_blank_to_none(raw_repo.get('description')),
            repository_url=raw_repo.get('html_url'),
            topics=frozenset(raw_repo.get('topics') or []),
        )

    @staticmethod
    def to_patch(field: str, value: FieldValue) -> Dict[str, Any]:
        """Builds the PATCH /repos body that sets a single scalar field."""
        if field not in PATCHABLE_FIELDS:
            raise ValueError(f"Field '{field}' cannot be set through a repository PATCH.")
        if not isinstance(value, str):
            raise ValueError(f"Field '{field}' expects a string value.")
        return {PATCHABLE_FIELDS[field]: value}

    @staticmethod
    def to_topics_payload(current: FieldValue, additions: FieldValue) -> Dict[str, Any]:
        """Builds the PUT /repos/{owner}/{repo}/topics body: current topics plus additions, never fewer."""
        return {"names": sorted(set(current) | set(additions))}
