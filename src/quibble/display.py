"""Terminal rendering of the orchestrator's event stream."""

from __future__ import annotations

import re

import typer

from quibble.events import QuibbleEvent

LABEL_WIDTH = 12

_SEVERITY_ORDER = {"critical": 0, "major": 1, "minor": 2}
_IMPACT_ORDER = {"high": 0, "medium": 1, "low": 2}
_WHITESPACE = re.compile(r"\s+")


def _label(name: str) -> str:
    return f"[{name}]".ljust(LABEL_WIDTH)


def format_duration(ms: int) -> str:
    seconds = max(0, ms // 1000)
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes}m {seconds}s" if minutes else f"{seconds}s"


def _shorten(text: str, limit: int = 100) -> str:
    cleaned = _WHITESPACE.sub(" ", text).strip()
    return cleaned if len(cleaned) <= limit else cleaned[: limit - 3] + "..."


class Display:
    """Consumes events and prints them; holds only presentation state."""

    def __init__(self, json_mode: bool = False) -> None:
        self.json_mode = json_mode
        self._total_round_ms = 0
        self._codex_tokens = 0
        self._claude_tokens = 0

    def handle_event(self, event: QuibbleEvent) -> None:
        if self.json_mode:
            typer.echo(event.format())
            return
        handler = getattr(self, f"_show_{event.type}", None)
        if handler is not None:
            handler(event.data)

    # --- Human-readable handlers ---

    def _show_start(self, data: dict) -> None:
        typer.echo()
        typer.secho(f"{_label('Session')} {data['session_id']}", dim=True)
        typer.secho(f"{_label('Input')} {data['input_file']}", dim=True)
        typer.echo()

    def _show_round_start(self, data: dict) -> None:
        typer.secho(f"Round {data['round']}", bold=True)
        typer.secho("-" * 7, dim=True)

    def _show_context(self, data: dict) -> None:
        total_kb = -(-data["total_bytes"] // 1024)
        typer.secho(f"{_label('Context')} Included {len(data['files'])} files ({total_kb} KB)", dim=True)
        for f in data["files"]:
            suffix = " (truncated)" if f["truncated"] else ""
            typer.secho(f"{_label('Context')}   {f['path']}{suffix}", dim=True)

    def _show_codex_review(self, data: dict) -> None:
        issues, opps = data["issues"], data["opportunities"]
        counts = {s: sum(1 for i in issues if i["severity"] == s) for s in _SEVERITY_ORDER}
        typer.secho(
            f"{_label('Codex')} Found {len(issues)} issues "
            f"({counts['critical']} critical, {counts['major']} major, {counts['minor']} minor)",
            fg=typer.colors.YELLOW,
        )
        typer.secho(f"{_label('Codex')} Found {len(opps)} opportunities", fg=typer.colors.YELLOW)

    def _show_claude_response(self, data: dict) -> None:
        typer.secho(
            f"{_label('Claude')} Agreed: {len(data['agreed'])}, disputed: {len(data['disputed'])}"
            + (f", partial: {len(data['partial'])}" if data["partial"] else ""),
            fg=typer.colors.BLUE,
        )
        typer.secho(f"{_label('Claude')} Document updated", fg=typer.colors.BLUE)
        typer.echo()

    def _show_round_items(self, data: dict) -> None:
        if data["issues"]:
            typer.secho("Issues", dim=True)
            for item in sorted(data["issues"], key=lambda i: _SEVERITY_ORDER.get(i["severity"], 9)):
                typer.echo(f"  {item['severity']:<8} {item['verdict']:<9} {_shorten(item['description'])}")
        if data["opportunities"]:
            typer.secho("Opportunities", dim=True)
            for item in sorted(data["opportunities"], key=lambda o: _IMPACT_ORDER.get(o["impact"], 9)):
                typer.echo(f"  {item['impact']:<8} {item['verdict']:<9} {_shorten(item['description'])}")
        if data["issues"] or data["opportunities"]:
            typer.echo()

    def _show_consensus(self, data: dict) -> None:
        if data["reached"]:
            typer.secho(f"{_label('Consensus')} Reached!", fg=typer.colors.GREEN)
        else:
            typer.secho(
                f"{_label('Consensus')} Not reached - {len(data['outstanding'])} items outstanding",
                fg=typer.colors.YELLOW,
            )

    def _show_round_complete(self, data: dict) -> None:
        timings = data["timings"]
        parts = []
        for key, name in (("codex_review_ms", "Codex"), ("claude_response_ms", "Claude"),
                          ("consensus_check_ms", "Consensus")):
            if timings.get(key) is not None:
                parts.append(f"{name} {format_duration(timings[key])}")
        if parts:
            typer.secho(f"{_label('Usage')} {' · '.join(parts)}", dim=True)
        typer.secho(f"{_label('Round')} Total: {format_duration(timings.get('round_total_ms', 0))}", dim=True)
        typer.echo()
        self._total_round_ms += timings.get("round_total_ms", 0)
        self._codex_tokens += timings.get("codex_total_tokens") or 0
        self._claude_tokens += timings.get("claude_total_tokens") or 0

    def _show_complete(self, data: dict) -> None:
        stats = data["statistics"]
        typer.secho("=" * 47, dim=True)
        typer.echo(f"{_label('Summary')} Status: {data['status']}")
        typer.echo(f"{_label('Summary')} Rounds: {data['total_rounds']}")
        typer.echo(f"{_label('Summary')} Issues resolved: {stats['issues_resolved']}/{stats['total_issues_raised']}")
        typer.echo(
            f"{_label('Summary')} Opportunities accepted: "
            f"{stats['opportunities_accepted']}/{stats['total_opportunities_raised']}"
        )
        if self._total_round_ms:
            typer.echo(f"{_label('Summary')} Session total: {format_duration(self._total_round_ms)}")
        usage = []
        if self._codex_tokens:
            usage.append(f"Codex {self._codex_tokens:,}")
        if self._claude_tokens:
            usage.append(f"Claude {self._claude_tokens:,}")
        if usage:
            typer.echo(f"{_label('Summary')} Session usage: {' · '.join(usage)}")
        typer.echo()
        typer.echo("Output written to: " + typer.style(data["output_file"], fg=typer.colors.CYAN))
        typer.echo(f"Session: {data['session_id']}")

        if data["status"] == "max_rounds_reached_unsafe":
            typer.secho("Warning: Critical issues remain unresolved", fg=typer.colors.RED)
        elif data["status"] == "max_rounds_reached_warning":
            typer.secho("Warning: Major issues remain unresolved", fg=typer.colors.YELLOW)

    def _show_error(self, data: dict) -> None:
        where = f" (round {data['round']}, {data['phase']})" if data.get("round") else ""
        typer.secho(f"Error [{data['code']}]{where}: {data['message']}", fg=typer.colors.RED, err=True)
        if data.get("recoverable"):
            typer.secho("The session can be resumed with --resume.", err=True)
