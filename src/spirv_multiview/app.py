from __future__ import annotations

from pathlib import Path
import argparse
import logging
import sys

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text
from textual.app import App, ComposeResult
from textual import events
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Footer, Header, Label, RichLog

from .api import add_multiview_capability, optimize, patch_text, relocate_multiview_data_access
from .core import ChangeSet, InstructionSequence, RenderedLine, RenderOptions, SequenceView
from .errors import MultiviewPatchError
from .patcher import MatrixLayout, classify
from .toolchain import SpirvTools, ToolchainConfig, looks_like_spirv, word_count


logger = logging.getLogger(__name__)

_STATUS_STYLES = {
    "inserted": "on rgb(40,90,40)",
    "rewritten": "on rgb(110,95,30)",
}


class PatchInspectorApp(App):
    CSS = """
    Screen {
        layout: vertical;
    }

    #main {
        height: 1fr;
    }

    #list {
        width: 1fr;
    }

    #details {
        width: 1fr;
        padding: 0 1;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("i", "toggle_details", "Toggle details panel"),
        Binding("n", "next_change", "Next change"),
        Binding("N", "prev_change", "Prev change"),
        Binding("H", "open_help", "Help"),
        Binding("up", "move_up", "Up", show=False),
        Binding("down", "move_down", "Down", show=False),
        Binding("j", "move_down", "Down", show=False),
        Binding("k", "move_up", "Up", show=False),
        Binding("pageup", "page_up", "Page up", show=False),
        Binding("pagedown", "page_down", "Page down", show=False),
        Binding("home", "go_home", "Home", show=False),
        Binding("end", "go_end", "End", show=False),
        Binding("g", "go_home", "Home", show=False),
        Binding("G", "go_end", "End", show=False),
    ]

    def __init__(
        self,
        sequence: InstructionSequence,
        changes: ChangeSet | None = None,
        title: str = "spirv-multiview",
        options: RenderOptions | None = None,
    ) -> None:
        super().__init__()
        self.title = title
        self.options = options or RenderOptions()
        self.view = SequenceView(sequence, changes, self.options)
        self._lines: list[RenderedLine] = []
        self._selected_index = 0
        self._window_start = 0
        self._select_timer = None

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal(id="main"):
            yield RichLog(id="list", auto_scroll=False, wrap=False)
            yield RichLog(id="details", auto_scroll=False, wrap=True)
        yield Footer()

    def on_mount(self) -> None:
        list_view = self.query_one("#list", RichLog)
        list_view.can_focus = True
        list_view.focus()
        self._lines = self.view.render()
        changed = self.view.changed_indices()
        self._set_selected_index(changed[0] if changed else 0)

    def on_resize(self, event: events.Resize) -> None:
        self.call_after_refresh(self._render_viewport)

    @property
    def selected_index(self) -> int:
        return self._selected_index

    def action_toggle_details(self) -> None:
        details = self.query_one("#details", RichLog)
        details.display = not details.display
        self.call_after_refresh(self._render_viewport)

    def action_move_up(self) -> None:
        self._set_selected_index(self._selected_index - 1)

    def action_move_down(self) -> None:
        self._set_selected_index(self._selected_index + 1)

    def action_page_up(self) -> None:
        self._set_selected_index(self._selected_index - max(1, self._viewport_size() - 3))

    def action_page_down(self) -> None:
        self._set_selected_index(self._selected_index + max(1, self._viewport_size() - 3))

    def action_go_home(self) -> None:
        self._set_selected_index(0)

    def action_go_end(self) -> None:
        self._set_selected_index(len(self._lines) - 1)

    def action_next_change(self) -> None:
        for index in self.view.changed_indices():
            if index > self._selected_index:
                self._set_selected_index(index)
                return

    def action_prev_change(self) -> None:
        for index in reversed(self.view.changed_indices()):
            if index < self._selected_index:
                self._set_selected_index(index)
                return

    def action_open_help(self) -> None:
        self.push_screen(HelpScreen(self._help_items()))

    def _help_items(self) -> list[tuple[str, str]]:
        items: list[tuple[str, str]] = []
        for binding in self.BINDINGS:
            if binding.description:
                items.append((binding.key, binding.description))
        return items

    def _viewport_size(self) -> int:
        list_log = self.query_one("#list", RichLog)
        height = list_log.size.height if list_log.is_attached else 40
        return max(10, height - 2)

    def _render_viewport(self) -> None:
        list_log = self.query_one("#list", RichLog)
        list_log.clear()
        if not self._lines:
            return
        window_size = self._viewport_size()
        self._window_start = _clamp_window_start(self._selected_index, len(self._lines), window_size)
        end = min(len(self._lines), self._window_start + window_size)
        for idx in range(self._window_start, end):
            rendered = self._lines[idx]
            line = Text(rendered.display)
            style = _STATUS_STYLES.get(rendered.status)
            if style:
                line.stylize(style, 0, len(line))
            if idx == self._selected_index:
                line.stylize("reverse", 0, len(line))
            list_log.write(line)

    def _set_selected_index(self, index: int) -> None:
        if not self._lines:
            return
        self._selected_index = max(0, min(index, len(self._lines) - 1))
        self._render_viewport()
        self._schedule_update_details()

    def _schedule_update_details(self) -> None:
        if self._select_timer is not None:
            self._select_timer.stop()
        self._select_timer = self.set_timer(0.1, self._update_details)

    def _update_details(self) -> None:
        details = self.query_one("#details", RichLog)
        details.clear()
        details.write(self.view.details_for_index(self._lines[self._selected_index].source_index))


class HelpScreen(ModalScreen[None]):
    CSS = """
    HelpScreen {
        align: center middle;
    }

    #help-panel {
        width: 60%;
        height: 60%;
        border: round $accent;
        padding: 1 2;
        background: $surface;
    }

    #help-log {
        height: 1fr;
    }
    """

    def __init__(self, items: list[tuple[str, str]]) -> None:
        super().__init__()
        self.items = items

    def compose(self) -> ComposeResult:
        with Vertical(id="help-panel"):
            yield Label("Green lines were inserted, yellow lines rewritten.")
            yield Label("Shortcuts")
            yield RichLog(id="help-log", wrap=True)
            yield Label("Esc = close")

    def on_mount(self) -> None:
        log = self.query_one("#help-log", RichLog)
        for key, desc in self.items:
            log.write(f"{key.ljust(10)} {desc}")

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            self.dismiss(None)
            event.stop()


def _clamp_window_start(index: int, total: int, window_size: int) -> int:
    if total <= window_size:
        return 0
    half = window_size // 2
    return max(0, min(index - half, total - window_size))


def configure_logging(verbose: bool) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler = RichHandler(console=Console(stderr=True), show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)


def _toolchain_from_args(parsed: argparse.Namespace) -> SpirvTools:
    config = ToolchainConfig.from_env()
    for name in ("spirv_dis", "spirv_as", "spirv_opt", "spirv_val", "target_env", "timeout"):
        value = getattr(parsed, name)
        if value is not None:
            setattr(config, name, value)
    config.dump_on_failure = parsed.dump_on_failure
    return SpirvTools(config)


def _layout_from_args(parsed: argparse.Namespace) -> MatrixLayout:
    return MatrixLayout(
        pointer_type=parsed.pointer_type,
        buffer=parsed.buffer,
        member=parsed.member,
        row_prefix=parsed.row_prefix,
        scalar_type=parsed.scalar_type,
    )


def _read_input(path: Path) -> bytes:
    if not path.exists():
        raise SystemExit(f"Input file not found: {path}")
    return path.read_bytes()


def _write_output(path: Path, binary: bytes) -> None:
    path.write_bytes(binary)
    logger.info("wrote %s (%d words)", path, word_count(binary))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spirv-multiview", description="Multiview patcher for SPIR-V vertex shaders")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output and tool diagnostics")
    parser.add_argument("--target-env", default=None, help="SPIRV-Tools target environment (default vulkan1.3)")
    parser.add_argument("--spirv-dis", default=None, help="Path to spirv-dis")
    parser.add_argument("--spirv-as", default=None, help="Path to spirv-as")
    parser.add_argument("--spirv-opt", default=None, help="Path to spirv-opt")
    parser.add_argument("--spirv-val", default=None, help="Path to spirv-val")
    parser.add_argument("--timeout", type=float, default=None, help="Seconds allowed per tool run")
    parser.add_argument(
        "--dump-on-failure",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Log the patched assembly when validation fails",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    opt_parser = subparsers.add_parser("optimize", help="Run the performance passes")
    opt_parser.add_argument("input", help="Input .spv")
    opt_parser.add_argument("-o", "--output", required=True, help="Output .spv")

    cap_parser = subparsers.add_parser("add-capability", help="Declare MultiView on a vertex shader")
    cap_parser.add_argument("input", help="Input .spv")
    cap_parser.add_argument("-o", "--output", required=True, help="Output .spv")

    relocate_parser = subparsers.add_parser("relocate", help="Relocate matrix reads by ViewIndex")
    relocate_parser.add_argument("input", help="Input .spv")
    relocate_parser.add_argument("-o", "--output", required=True, help="Output .spv")
    relocate_parser.add_argument("--optimize", action=argparse.BooleanOptionalAction, default=False)

    inspect_parser = subparsers.add_parser("inspect", help="Browse the patched instructions")
    inspect_parser.add_argument("input", help="Input .spv or .spvasm")
    inspect_parser.add_argument("--print", dest="print_only", action="store_true", help="Print instead of opening the UI")
    inspect_parser.add_argument("--show-line-numbers", action=argparse.BooleanOptionalAction, default=None)
    inspect_parser.add_argument("--show-sections", action=argparse.BooleanOptionalAction, default=None)

    for sub in (relocate_parser, inspect_parser):
        required = sub is relocate_parser
        sub.add_argument("--field-index", type=int, required=required, default=None, help="First matrix row")
        sub.add_argument("--base-offset", type=int, required=required, default=None, help="Offset of per-view data")
        defaults = MatrixLayout()
        sub.add_argument("--pointer-type", default=defaults.pointer_type)
        sub.add_argument("--buffer", default=defaults.buffer)
        sub.add_argument("--member", default=defaults.member)
        sub.add_argument("--row-prefix", default=defaults.row_prefix)
        sub.add_argument("--scalar-type", default=defaults.scalar_type)
    return parser


def _run_inspect(parsed: argparse.Namespace) -> int:
    path = Path(parsed.input)
    data = _read_input(path)
    if looks_like_spirv(data):
        text = _toolchain_from_args(parsed).disassemble(data)
    else:
        text = data.decode("utf-8")

    changes = None
    if parsed.field_index is not None or parsed.base_offset is not None:
        sequence, report = patch_text(
            text,
            parsed.field_index or 0,
            parsed.base_offset or 0,
            _layout_from_args(parsed),
        )
        if report is not None:
            changes = report.changes
    else:
        sequence = InstructionSequence.from_text(text)
        logger.info("%s: %s shader", path.name, classify(sequence).value)

    if parsed.print_only:
        sys.stdout.write(sequence.to_text())
        return 0
    options = RenderOptions()
    if parsed.show_line_numbers is not None:
        options.show_line_numbers = parsed.show_line_numbers
    if parsed.show_sections is not None:
        options.show_sections = parsed.show_sections
    app = PatchInspectorApp(sequence, changes, title=path.name, options=options)
    app.run()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    parsed = parser.parse_args(argv)
    configure_logging(parsed.verbose)
    try:
        if parsed.command == "inspect":
            return _run_inspect(parsed)
        tools = _toolchain_from_args(parsed)
        binary = _read_input(Path(parsed.input))
        if parsed.command == "optimize":
            out = optimize(binary, tools)
        elif parsed.command == "add-capability":
            out = add_multiview_capability(binary, tools)
        else:
            out = relocate_multiview_data_access(
                binary,
                parsed.field_index,
                parsed.base_offset,
                optimize=parsed.optimize,
                tools=tools,
                layout=_layout_from_args(parsed),
            )
        _write_output(Path(parsed.output), out)
    except MultiviewPatchError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
