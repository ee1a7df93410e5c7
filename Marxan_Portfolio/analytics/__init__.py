"""Portfolio analytics: pairwise distance, hierarchical clustering, ordination."""

from Marxan_Portfolio.analytics.distance import distance, validate_distance_matrix
from Marxan_Portfolio.analytics.clustering import Dendrogram, cluster
from Marxan_Portfolio.analytics.ordination import ordinate

__all__ = ["distance", "validate_distance_matrix", "Dendrogram", "cluster", "ordinate"]
