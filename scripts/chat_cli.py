#!/usr/bin/env python3
"""Interactive chat CLI for testing the toolgate service."""

import json
import sys
from collections.abc import Iterator

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt


def iter_sse_events(lines: Iterator[str]) -> Iterator[dict]:
    """Decode an SSE line stream into event payloads."""
    data_lines: list[str] = []
    for line in lines:
        if line.startswith("data: "):
            data_lines.append(line[len("data: ") :])
        elif line == "" and data_lines:
            yield json.loads("\n".join(data_lines))
            data_lines = []
    if data_lines:
        yield json.loads("\n".join(data_lines))


class ChatCLI:
    """Interactive chat interface for the toolgate service."""

    def __init__(self, base_url: str = "http://localhost:8000"):
        """Initialize chat CLI."""
        self.base_url = base_url
        self.conversation_id: str | None = None
        self.console = Console()
        self.client = httpx.Client(timeout=120.0)

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]Toolgate - Interactive Chat[/bold blue]\n"
                "Type your messages to chat with the agent. Tools that need approval will ask you first.\n"
                "Commands: /help, /clear, /history, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print("[red]Cannot connect to the service. Make sure it's running.[/red]")
            return

        self.console.print("[green]Connected to toolgate service[/green]\n")

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]")

                if user_input.lower() in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif user_input.lower() == "/help":
                    self._show_help()
                    continue
                elif user_input.lower() == "/clear":
                    self.conversation_id = None
                    self.console.print("[yellow]Conversation cleared[/yellow]")
                    continue
                elif user_input.lower() == "/history":
                    self._show_history()
                    continue
                elif user_input.strip() == "":
                    continue

                payload: dict = {"message": user_input}
                while payload:
                    pending = self._run_turn(payload)
                    payload = self._ask_approval(pending) if pending else {}

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]Goodbye![/yellow]")
            self.client.close()

    def _test_connection(self) -> bool:
        """Test connection to the service."""
        try:
            response = self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _run_turn(self, payload: dict) -> dict | None:
        """Send one request and render its event stream.

        Returns:
            The tool call awaiting approval, if the turn paused on one
        """
        if self.conversation_id:
            payload["conversation_id"] = self.conversation_id

        pending: dict | None = None
        streaming_text = False
        try:
            with self.client.stream("POST", f"{self.base_url}/chat", json=payload) as response:
                if response.status_code != 200:
                    response.read()
                    self.console.print(f"[red]API Error: {response.status_code} - {response.text}[/red]")
                    return None

                for event in iter_sse_events(response.iter_lines()):
                    event_type = event.get("type")
                    if event_type == "text-delta":
                        if not streaming_text:
                            self.console.print("[bold green]Agent:[/bold green] ", end="")
                            streaming_text = True
                        self.console.print(event["delta"], end="", markup=False, highlight=False)
                        continue

                    if streaming_text:
                        self.console.print()
                        streaming_text = False

                    if event_type == "tool-state-delta":
                        self._show_tool_delta(event)
                        if event["state"] == "input-available":
                            pending = event
                        elif pending and pending["tool_call_id"] == event["tool_call_id"]:
                            pending = None
                    elif event_type == "error":
                        self.console.print(f"[red]Error: {event['message']}[/red]")
                    elif event_type == "finish":
                        self.conversation_id = event["conversation_id"]
                        if event["status"] == "tool-pending":
                            return pending
                        if event["status"] == "step-budget-exhausted":
                            self.console.print("[yellow]Stopped: step budget exhausted[/yellow]")
        except httpx.HTTPError as e:
            self.console.print(f"[red]Connection error: {e}[/red]")
        return None

    def _show_tool_delta(self, event: dict) -> None:
        state = event["state"]
        name = event["tool_name"]
        if state == "input-streaming":
            self.console.print(f"[dim]Preparing {name}...[/dim]")
        elif state == "input-available":
            self.console.print(f"[cyan]Tool call {name}[/cyan] {json.dumps(event.get('input') or {})}")
        else:
            self.console.print(f"[magenta]{name} ->[/magenta] {event.get('output')}")

    def _ask_approval(self, pending: dict) -> dict:
        """Ask the user to approve or deny a pending call and build the follow-up request."""
        self.console.print(
            Panel(
                f"[bold]{pending['tool_name']}[/bold]\n{json.dumps(pending.get('input') or {}, indent=2)}",
                title="[yellow]Approval required[/yellow]",
                border_style="yellow",
            )
        )
        approved = Confirm.ask("Run this tool?", default=False)
        return {"approvals": {pending["tool_call_id"]: "YES" if approved else "NO"}}

    def _show_history(self) -> None:
        """Print the persisted conversation."""
        if not self.conversation_id:
            self.console.print("[dim]No conversation yet[/dim]")
            return
        response = self.client.get(f"{self.base_url}/conversations/{self.conversation_id}")
        if response.status_code != 200:
            self.console.print(f"[red]API Error: {response.status_code} - {response.text}[/red]")
            return
        self.console.print_json(response.text)

    def _show_help(self) -> None:
        """Show help information."""
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /clear - Start a new conversation
• /history - Show the stored conversation
• /quit or /exit - Exit the chat

[bold]Things to try:[/bold]
1. "What time is it in Europe/Paris?" (runs immediately)
2. "What's the weather in Berlin?" (asks for approval)
3. "Remind me to stretch in 30 seconds" (schedules a task)
4. "Put a team sync on my calendar tomorrow at 10:00" (asks for approval)
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"

    chat = ChatCLI(base_url)
    chat.start()


if __name__ == "__main__":
    main()
