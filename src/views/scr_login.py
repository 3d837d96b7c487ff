from textual import on, work
from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.widgets import Button, Input, Label

from utils.messages import UserLoginMessage
from views.base_screen import BaseScreen
from views.modal_dialog import QuitDialogModal


class LoginScreen(BaseScreen):
    """
    Admin sign-in by user id. Dismissed once an admin account was entered.
    """

    def __init__(self):
        super().__init__()
        self.configure(header_sub_title="Sign in", show_sidebar=False)

    def compose(self) -> ComposeResult:
        yield from super().compose()
        with Vertical(id="div-login"):
            yield Label("Admin user id")
            yield Input(placeholder="u-admin", id="input-login-uid")
            with Horizontal(id="div-login-btns"):
                yield Button("Quit", id="btn-quit")
                yield Button("Sign in", id="btn-login", variant="primary")

    def on_mount(self):
        self.query_one("#input-login-uid").focus()

    @on(Input.Submitted, "#input-login-uid")
    @on(Button.Pressed, "#btn-login")
    @work(exclusive=True)
    async def handle_login_submit(self) -> None:
        uid_input = self.query_one("#input-login-uid", Input)
        uid = uid_input.value.strip()
        if not uid:
            self.notify("User id cannot be empty!", severity="error")
            return

        user = await self.app.state.sign_in(uid)
        if user is None:
            self.notify("Unknown user or not an admin.", severity="error")
            uid_input.value = ""
            uid_input.focus()
            uid_input.add_class("-invalid")
            return

        self.notify(f"Hello {user.full_name or user.email}!")
        self.app.post_message(UserLoginMessage())
        self.dismiss()

    @on(Button.Pressed, "#btn-quit")
    def handle_quit_(self) -> None:
        self.app.push_screen(QuitDialogModal())
