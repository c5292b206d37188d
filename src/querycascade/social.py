"""Keys, queries and mutations for the posts/comments/users application.

The invalidation map mirrors what each write can change:

    createComment -> ("comments", postId), ("posts", "feed")
    createPost / likePost / unlikePost / deletePost -> ("posts",)
    createUser -> ("users", "list"), ("users", "stats")
    updateUser -> ("users", "list")
    updateUserRole / updateUserStatus -> ("users", "list"), ("users", "stats")

The actual reads and writes come from a SocialApi implementation supplied
by the application (server actions, HTTP client, test fake).
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from querycascade.client import QueryClient
from querycascade.keys import define_keys
from querycascade.mutations import MutationDescriptor
from querycascade.types import Query

post_keys = define_keys(
    {
        "all": lambda: ("posts",),
        "feeds": lambda: ("posts", "feed"),
        "feed": lambda page, limit: ("posts", "feed", page, limit),
        "detail": lambda post_id: ("posts", post_id),
    }
)

comment_keys = define_keys(
    {
        "all": lambda: ("comments",),
        "post": lambda post_id: ("comments", post_id),
        "page": lambda post_id, page, limit: ("comments", post_id, page, limit),
    }
)

user_keys = define_keys(
    {
        "all": lambda: ("users",),
        "lists": lambda: ("users", "list"),
        "list": lambda filters: ("users", "list", {"filters": filters}),
        "details": lambda: ("users", "detail"),
        "detail": lambda user_id: ("users", "detail", user_id),
        "profile": lambda user_id: ("users", "detail", user_id, "profile"),
        "stats": lambda: ("users", "stats"),
        "search": lambda query: ("users", "search", query),
    }
)

COMMENTS_STALE = "2m"
COMMENTS_RETENTION = "5m"
POSTS_STALE = "5m"
POSTS_RETENTION = "10m"


class SocialApi(Protocol):
    """Async operations the application exposes for posts, comments and users."""

    async def get_comments(self, post_id: str, page: int, limit: int) -> Any: ...

    async def create_comment(self, data: Mapping[str, Any]) -> Any: ...

    async def get_post_feed(self, page: int, limit: int) -> Any: ...

    async def get_post(self, post_id: str) -> Any: ...

    async def create_post(self, data: Mapping[str, Any]) -> Any: ...

    async def like_post(self, post_id: str, reaction: str | None = None) -> Any: ...

    async def unlike_post(self, post_id: str) -> Any: ...

    async def delete_post(self, post_id: str) -> Any: ...

    async def get_user(self, user_id: str) -> Any: ...

    async def create_user(self, data: Mapping[str, Any]) -> Any: ...

    async def update_user(self, data: Mapping[str, Any]) -> Any: ...

    async def update_user_role(self, data: Mapping[str, Any]) -> Any: ...

    async def update_user_status(self, data: Mapping[str, Any]) -> Any: ...


def reports_success(result: Any) -> bool:
    """Action results carry {"success": bool, "error": str}."""
    if isinstance(result, Mapping):
        return bool(result.get("success", True))
    return bool(getattr(result, "success", True))


# =============================================================================
# Queries
# =============================================================================


def comments_query(
    client: QueryClient, api: SocialApi, post_id: str, page: int = 1, limit: int = 20
) -> Query[Any]:
    return client.query(
        comment_keys["page"](post_id, page, limit),
        lambda: api.get_comments(post_id, page, limit),
        stale=COMMENTS_STALE,
        retention=COMMENTS_RETENTION,
        enabled=bool(post_id),
    )


def feed_query(client: QueryClient, api: SocialApi, page: int = 1, limit: int = 10) -> Query[Any]:
    return client.query(
        post_keys["feed"](page, limit),
        lambda: api.get_post_feed(page, limit),
        stale=POSTS_STALE,
        retention=POSTS_RETENTION,
    )


def post_query(client: QueryClient, api: SocialApi, post_id: str) -> Query[Any]:
    return client.query(
        post_keys["detail"](post_id),
        lambda: api.get_post(post_id),
        stale=POSTS_STALE,
        retention=POSTS_RETENTION,
        enabled=bool(post_id),
    )


def user_query(client: QueryClient, api: SocialApi, user_id: str) -> Query[Any]:
    return client.query(
        user_keys["detail"](user_id),
        lambda: api.get_user(user_id),
        enabled=bool(user_id),
    )


# =============================================================================
# Mutations
# =============================================================================


def create_comment(api: SocialApi) -> MutationDescriptor[Mapping[str, Any], Any]:
    """Creating a comment changes its post's comment pages and feed counts."""
    return MutationDescriptor(
        name="createComment",
        fn=api.create_comment,
        invalidates=lambda data, _result: [
            comment_keys["post"](data["postId"]),
            post_keys["feeds"](),
        ],
    )


def create_post(api: SocialApi) -> MutationDescriptor[Mapping[str, Any], Any]:
    return MutationDescriptor(
        name="createPost",
        fn=api.create_post,
        invalidates=[post_keys["all"]()],
        is_success=reports_success,
    )


def like_post(api: SocialApi) -> MutationDescriptor[Mapping[str, Any], Any]:
    return MutationDescriptor(
        name="likePost",
        fn=lambda data: api.like_post(data["postId"], data.get("reaction")),
        invalidates=[post_keys["all"]()],
        is_success=reports_success,
    )


def unlike_post(api: SocialApi) -> MutationDescriptor[str, Any]:
    return MutationDescriptor(
        name="unlikePost",
        fn=api.unlike_post,
        invalidates=[post_keys["all"]()],
        is_success=reports_success,
    )


def delete_post(api: SocialApi) -> MutationDescriptor[str, Any]:
    return MutationDescriptor(
        name="deletePost",
        fn=api.delete_post,
        invalidates=[post_keys["all"]()],
        is_success=reports_success,
    )


def create_user(api: SocialApi) -> MutationDescriptor[Mapping[str, Any], Any]:
    return MutationDescriptor(
        name="createUser",
        fn=api.create_user,
        invalidates=[user_keys["lists"](), user_keys["stats"]()],
    )


def update_user(api: SocialApi) -> MutationDescriptor[Mapping[str, Any], Any]:
    return MutationDescriptor(
        name="updateUser",
        fn=api.update_user,
        invalidates=[user_keys["lists"]()],
    )


def update_user_role(api: SocialApi) -> MutationDescriptor[Mapping[str, Any], Any]:
    return MutationDescriptor(
        name="updateUserRole",
        fn=api.update_user_role,
        invalidates=[user_keys["lists"](), user_keys["stats"]()],
    )


def update_user_status(api: SocialApi) -> MutationDescriptor[Mapping[str, Any], Any]:
    return MutationDescriptor(
        name="updateUserStatus",
        fn=api.update_user_status,
        invalidates=[user_keys["lists"](), user_keys["stats"]()],
    )


__all__ = [
    "SocialApi",
    "comment_keys",
    "comments_query",
    "create_comment",
    "create_post",
    "create_user",
    "delete_post",
    "feed_query",
    "like_post",
    "post_keys",
    "post_query",
    "reports_success",
    "unlike_post",
    "update_user",
    "update_user_role",
    "update_user_status",
    "user_keys",
    "user_query",
]
