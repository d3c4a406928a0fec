"""
Chart Patterns — Pattern Family Classifiers
"""

from chartpatterns.engines.families.doubles import DoublesClassifier
from chartpatterns.engines.families.flags import FlagsClassifier
from chartpatterns.engines.families.head_shoulders import HeadShouldersClassifier
from chartpatterns.engines.families.triangles import TrianglesClassifier
from chartpatterns.engines.families.triples import TriplesClassifier
from chartpatterns.engines.families.wedges import WedgesClassifier


def default_classifiers() -> list:
    """One fresh classifier per family, in reporting order."""
    return [
        DoublesClassifier(),
        HeadShouldersClassifier(),
        TrianglesClassifier(),
        WedgesClassifier(),
        FlagsClassifier(),
        TriplesClassifier(),
    ]


__all__ = [
    "DoublesClassifier",
    "FlagsClassifier",
    "HeadShouldersClassifier",
    "TrianglesClassifier",
    "TriplesClassifier",
    "WedgesClassifier",
    "default_classifiers",
]
