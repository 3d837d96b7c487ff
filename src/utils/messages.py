from textual.message import Message


class QuitRequestedMessage(Message):
    """
    broadcasted when the app is about to quit
    """

    bubble = True


class UserLogoutMessage(Message):
    """
    broadcasted when the admin signs out
    """

    bubble = True


class UserLoginMessage(Message):
    """
    Fired when an admin signed in, so the screen can refresh
    """

    bubble = True


class OrderChangedMessage(Message):
    """
    Fired after an action changed an order (refund, sync, status update).
    Listened to by the orders screen to reload the page and the detail panel.
    """

    bubble = True

    def __init__(self, order_id: str) -> None:
        super().__init__()
        self.order_id = order_id


class ModeSwitchedMessage(Message):
    """
    fired whenever switch_mode is called
    must be fired from app level
    """

    bubble = True

    def __init__(self, old_mode: str, new_mode: str) -> None:
        super().__init__()
        self.old_mode = old_mode
        self.new_mode = new_mode
