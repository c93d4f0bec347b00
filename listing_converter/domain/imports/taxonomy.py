import logging
from typing import Callable, Dict, List, Union

from listing_converter.domain.imports.collaborators import TaxonomyStore
from listing_converter.domain.imports.errors import CollaboratorError

logger = logging.getLogger(__name__)

# Term id used for hierarchical taxonomies while running in test mode.
TEST_MODE_TERM_ID = 0

TermValue = Union[int, str]
LogFn = Callable[[str, str], object]


def is_tag_taxonomy(taxonomy: str) -> bool:
    """Tag-like taxonomies take free-form names that the record store creates on save."""
    return taxonomy == "post_tag" or taxonomy.endswith("_tags")


def resolve_taxonomy_terms(
    tax_input: Dict[str, List[str]],
    taxonomies: TaxonomyStore,
    *,
    test_mode: bool,
    log: LogFn,
) -> Dict[str, List[TermValue]]:
    """
    Resolve term names per taxonomy into what the record store expects.

    Unknown taxonomies are dropped silently. Tag-like taxonomies keep names;
    hierarchical ones resolve to term ids, creating missing terms. A taxonomy or
    term that cannot be looked up or created is logged and skipped without failing
    the row.
    """
    resolved: Dict[str, List[TermValue]] = {}

    for taxonomy, terms in tax_input.items():
        terms = [term.strip() for term in terms if term and term.strip()]
        if not terms:
            continue

        try:
            known = taxonomies.taxonomy_exists(taxonomy)
        except CollaboratorError as exc:
            log(f'Could not look up taxonomy "{taxonomy}": {exc.message}', "warning")
            continue
        if not known:
            logger.debug("Dropping terms for unknown taxonomy '%s'", taxonomy)
            continue

        tag_like = is_tag_taxonomy(taxonomy)
        processed: List[TermValue] = []

        for term_name in terms:
            if test_mode:
                processed.append(term_name if tag_like else TEST_MODE_TERM_ID)
                continue

            if tag_like:
                processed.append(term_name)
                continue

            try:
                term_id = taxonomies.term_exists(term_name, taxonomy)
            except CollaboratorError as exc:
                log(f'Could not look up term "{term_name}" in taxonomy "{taxonomy}": {exc.message}', "warning")
                continue
            if term_id is None:
                try:
                    term_id = taxonomies.create_term(term_name, taxonomy)
                except CollaboratorError as exc:
                    log(
                        f'Failed to create term "{term_name}" in taxonomy "{taxonomy}": {exc.message}',
                        "warning",
                    )
                    continue

            processed.append(term_id)

        if processed:
            resolved[taxonomy] = processed

    return resolved
