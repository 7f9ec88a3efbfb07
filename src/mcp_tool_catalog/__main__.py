"""Allow `python -m mcp_tool_catalog` to show the CLI help without consuming foreign argv."""

from typer.main import get_command

from .cli import app


def main() -> None:
    cmd = get_command(app)
    try:
        cmd.main(args=["--help"], prog_name="mcp-tool-catalog")
    except SystemExit:
        # Help prints then exits; suppress for embedding
        return


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
