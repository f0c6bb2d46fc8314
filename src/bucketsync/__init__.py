"""BucketSync - keeps a local mirror of remote object-storage buckets."""

__version__ = "0.1.0"
