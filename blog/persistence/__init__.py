from blog.persistence.image_repository import ImageRepository
from blog.persistence.post_repository import PostRepository
from blog.persistence.tx import run_in_transaction, transaction

__all__ = ["ImageRepository", "PostRepository", "run_in_transaction", "transaction"]
