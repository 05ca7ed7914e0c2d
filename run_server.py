# run_server.py
import os
import sys


def _prepare_workdir_for_pyinstaller():
    """
    Wenn als PyInstaller-EXE gestartet (onefile/onefolder), werden
    die Daten unter _MEIPASS entpackt. Wir wechseln dorthin,
    damit relative Pfade wie ./db weiterhin funktionieren.
    """
    base = getattr(sys, "_MEIPASS", None)
    if base and os.path.isdir(base):
        os.chdir(base)


def main():
    _prepare_workdir_for_pyinstaller()

    import uvicorn
    from rqm.config import settings as app_settings

    host = os.getenv("RQM_HOST", "127.0.0.1")
    port = int(os.getenv("RQM_PORT", "8000"))

    uvicorn.run("main:app", host=host, port=port, reload=False, log_level=app_settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
