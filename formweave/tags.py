"""Tag Merge Resolver.

Combines a template's tag list with the tags already on the form. Whether the
template replaces or merges is decided by the field's dirty flag alone (has
the user added tags manually?), never by the operator:

    operator      dirty  template empty  result
    add / None    no     no              template tags
    add / None    no     yes             current (no-op)
    add / None    yes    no              current + template
    add / None    yes    yes             current
    remove        no     any             current (no-op)
    remove        yes    no              current - template
    remove        yes    yes             current

Tag lists keep their order and never contain duplicates.
"""

import logging
from typing import Any, Iterable, List, Optional

from typing_extensions import assert_never

from formweave.registry import unique_strings
from formweave.types import TagOperator

logger = logging.getLogger(__name__)


def parse_tags(value: Any) -> List[str]:
    """Parse a comma-separated string or a list into a de-duplicated tag list.

    Examples:
        >>> parse_tags("foo, bar, foo")
        ['foo', 'bar']
        >>> parse_tags(None)
        []
    """
    if isinstance(value, str):
        value = value.split(",")
    return unique_strings(value)


class TagMergeResolver:
    """Resolve the tag list produced by applying a template.

    Examples:
        >>> resolver = TagMergeResolver()
        >>> resolver.resolve(["baz", "qux", "foo"], ["foo", "bar"], "add", True)
        ['baz', 'qux', 'foo', 'bar']
    """

    def resolve(
        self,
        current: Iterable[str],
        template_tags: Optional[Iterable[str]],
        operator: Any,
        field_is_dirty: bool,
    ) -> List[str]:
        """Compute the merged tag list.

        Args:
            current: Tags currently on the form
            template_tags: Tags named by the template (None for none)
            operator: "add", "remove", a TagOperator, or None (legacy add)
            field_is_dirty: Whether the user added tags manually

        Returns:
            The resulting tag list
        """
        current_tags = parse_tags(list(current or []))
        incoming = parse_tags(template_tags)
        tag_operator = self._operator(operator)

        if tag_operator is TagOperator.ADD:
            if not incoming:
                return current_tags
            if not field_is_dirty:
                return incoming
            return current_tags + [tag for tag in incoming if tag not in current_tags]
        elif tag_operator is TagOperator.REMOVE:
            if not field_is_dirty or not incoming:
                return current_tags
            return [tag for tag in current_tags if tag not in incoming]
        else:
            assert_never(tag_operator)

    def _operator(self, operator: Any) -> TagOperator:
        if operator is None or operator == "":
            return TagOperator.ADD
        if isinstance(operator, TagOperator):
            return operator
        try:
            return TagOperator(operator)
        except ValueError:
            logger.warning("Unknown tag operator %r, treating as add", operator)
            return TagOperator.ADD


__all__ = [
    "TagMergeResolver",
    "parse_tags",
]
