from enum import StrEnum


class EventType(StrEnum):
    # Subscriptions match on plain strings, so names outside this set still work.
    PAYMENT_SUCCEEDED = "payment.succeeded"
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"
    POST_CREATED = "post.created"
    POST_UPDATED = "post.updated"
    POST_DELETED = "post.deleted"
    COMMENT_CREATED = "comment.created"
    COMMENT_UPDATED = "comment.updated"
    COMMENT_DELETED = "comment.deleted"
    CLASS_CREATED = "class.created"
    COURSE_DELETED = "course.deleted"
    FORUM_TOPIC_CREATED = "forum_topic.created"
    FORUM_TOPIC_UPDATED = "forum_topic.updated"
    FORUM_TOPIC_DELETED = "forum_topic.deleted"
    FORUM_POST_CREATED = "forum_post.created"
    FORUM_REPLY_CREATED = "forum_reply.created"
