"""Echo plugin — a minimal hosted plugin for trying out plughost.

Registers a sidebar render surface, answers every ``new_task`` with a
``message_updated`` item and pushes full state after each exchange.
"""

import hostapi

from echo_plugin.formatting import format_reply

_provider = None


class SidebarProvider:
    def __init__(self, context):
        self.context = context
        self.view = None
        self.messages = []
        self.mode = "code"

    def resolve_view(self, view, state):
        self.view = view
        print("sidebar resolved", {"initial_setup": state["initial_setup"]})

    def handle_consumer_message(self, message):
        kind = message.get("type")
        if kind == "new_task":
            item = {"ts": len(self.messages) + 1, "say": "text", "text": format_reply(message.get("text", ""))}
            self.messages.append(item)
            self.view.post_message({"type": "message_updated", "chat_message": item})
            self.push_state()
        elif kind == "mode":
            self.mode = message.get("text") or self.mode
            self.push_state()
        elif kind == "clear_task":
            self.messages = []

    def push_state(self):
        self.view.post_message(
            {"type": "state", "state": {"mode": self.mode, "chat_messages": list(self.messages)}}
        )

    def get_state(self):
        return {"mode": self.mode, "chat_messages": list(self.messages)}


def activate(context):
    global _provider
    _provider = SidebarProvider(context)
    context.subscriptions.append(hostapi.window.register_render_surface("sidebar", _provider))
    print("echo plugin activated in", context.workspace_path)
    return {"get_state": _provider.get_state}


def deactivate():
    print("echo plugin deactivated")
