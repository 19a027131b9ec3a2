"""
Runner label handling.

A queued job declares the labels it needs (``runs-on``); a runner pool offers
a set of labels. A job matches a pool when every label the job requires is
offered by the pool. The pool may offer more than the job asks for, never
fewer.

Pool labels may use the act_runner schema form ``<name>:<schema>`` (for
example ``ubuntu-latest:docker://node:16``); such a label satisfies a job
asking for plain ``ubuntu-latest``.
"""

import abc

LABEL_SCHEMA_SEPARATOR = ":"

# Labels act_runner registers with when none are configured.
DEFAULT_RUNNER_LABELS = [
    "ubuntu-latest:docker://gitea/runner-images:ubuntu-latest",
    "ubuntu-24.04:docker://gitea/runner-images:ubuntu-24.04",
    "ubuntu-22.04:docker://gitea/runner-images:ubuntu-22.04",
]


def label_name(label: str) -> str:
    """Return the part of a label before the schema separator."""
    return label.split(LABEL_SCHEMA_SEPARATOR, 1)[0]


def parse_labels(value: str | None) -> list[str]:
    """Split a comma separated label string, dropping blanks."""
    if not value:
        return []
    return [label.strip() for label in value.split(",") if label.strip()]


def effective_labels(pool_labels: list[str], defaults: list[str] | None = None) -> list[str]:
    """Merge a pool's declared labels with the default labels.

    Declared labels come first, in order. A default is only added when no
    declared label shares its name, so ``ubuntu-latest:docker://node:20``
    replaces the default ``ubuntu-latest`` image.
    """
    if defaults is None:
        defaults = DEFAULT_RUNNER_LABELS

    merged = []
    for label in pool_labels:
        if label not in merged:
            merged.append(label)

    declared = {label_name(label) for label in merged}
    for label in defaults:
        if label_name(label) not in declared and label not in merged:
            merged.append(label)

    return merged


class LabelMatcher(abc.ABC):
    """Decides whether a pool's labels can run a job.

    Subclasses define ``satisfies``; ``matches`` applies it to every label
    the job requires.
    """

    name = "base"

    @abc.abstractmethod
    def satisfies(self, required: str, supported: str) -> bool:
        """Check whether one runner label provides one required label."""

    def matches(self, job_labels: list[str], runner_labels: list[str]) -> bool:
        """Check that each required job label is offered by some runner label.

        A job without labels matches any pool.
        """
        for required in job_labels:
            if not any(self.satisfies(required, supported) for supported in runner_labels):
                return False
        return True


class ExactLabelMatcher(LabelMatcher):
    """Labels must be identical strings."""

    name = "exact"

    def satisfies(self, required: str, supported: str) -> bool:
        return required == supported


class SchemaLabelMatcher(LabelMatcher):
    """Exact match, or the runner label is ``<required>:<schema>``."""

    name = "schema"

    def satisfies(self, required: str, supported: str) -> bool:
        if required == supported:
            return True
        return label_name(supported) == required


MATCHERS = {
    ExactLabelMatcher.name: ExactLabelMatcher,
    SchemaLabelMatcher.name: SchemaLabelMatcher,
}


def get_matcher(name: str) -> LabelMatcher:
    """Look up a matcher strategy by name."""
    try:
        return MATCHERS[name]()
    except KeyError:
        raise ValueError(
            f"Unknown label matcher '{name}' (expected one of: {', '.join(sorted(MATCHERS))})"
        ) from None


_default_matcher = SchemaLabelMatcher()


def job_matches_labels(job_labels: list[str], runner_labels: list[str]) -> bool:
    """Check a job against a pool's labels with the default schema matcher."""
    return _default_matcher.matches(job_labels, runner_labels)
