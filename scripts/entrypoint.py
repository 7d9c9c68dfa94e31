import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("entrypoint")


def main() -> None:
  """Launch the build service under uvicorn."""
  host = os.getenv("GDEVELOP_HOST", "0.0.0.0")
  port = os.getenv("GDEVELOP_PORT", "8002")
  logger.info("Starting GDevelop build service on %s:%s...", host, port)
  # Use os.execvp to replace the current process with uvicorn.
  # This ensures signals (SIGTERM, etc.) are handled correctly by uvicorn.
  args = ["uvicorn", "gdbuild.main:app", "--host", host, "--port", port, "--no-server-header"]
  os.execvp("uvicorn", ["uvicorn"] + args[1:])


if __name__ == "__main__":
  main()
