from blog.entities.post import PostRow
from blog.entities.image import ImageRow

__all__ = ["PostRow", "ImageRow"]
