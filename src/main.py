from textual import on, work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import LoadingIndicator

from utils.config import get_settings
from utils.messages import ModeSwitchedMessage, QuitRequestedMessage, UserLogoutMessage
from utils.state import GlobalState
from views.scr_catalog import CatalogScreen
from views.scr_login import LoginScreen
from views.scr_orders import OrdersScreen


class AdminApp(App):
    BINDINGS = [
        Binding("ctrl+t", "switch_light", "Toggle Theme", show=True),
    ]

    MODES = {
        "orders": OrdersScreen,
        "catalog": CatalogScreen,
    }

    ADMIN_MODES = {"orders": "Orders", "catalog": "Catalog"}

    CSS_PATH = "styles/admin.tcss"

    state: GlobalState

    def __init__(self):
        super().__init__()
        self.settings = get_settings()
        self.state = GlobalState()

    def compose(self) -> ComposeResult:
        yield LoadingIndicator()

    async def on_mount(self) -> None:
        self.main_flow()

    def action_switch_light(self):
        if self.theme == "textual-dark":
            self.theme = "solarized-light"
        else:
            self.theme = "textual-dark"
        self.notify(f"Theme changed to {self.theme}")

    @on(UserLogoutMessage)
    def handle_user_logout(self):
        self.state.sign_out()
        self.notify("Signed out.")
        self.main_flow()

    @on(QuitRequestedMessage)
    def handle_quit(self):
        self.state.sign_out()
        self.exit()

    @work
    async def main_flow(self):
        await self.push_screen_wait(LoginScreen())
        self.app.post_message(ModeSwitchedMessage(self.app.current_mode, "orders"))
        await self.switch_mode("orders")


if __name__ == "__main__":
    app = AdminApp()
    app.run()
