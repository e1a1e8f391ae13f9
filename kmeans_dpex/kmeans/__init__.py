from .engine import collect_results, kmeans_cuda, run

__all__ = ("collect_results", "kmeans_cuda", "run")
