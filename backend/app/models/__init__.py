from .activity import ActivityItem, Category, ItemKey
from .inbox import InboxKind, InboxNotification
from .notifications import UserNotificationState
