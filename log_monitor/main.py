import argparse
import signal
import sys

from PySide6.QtCore import QCoreApplication, QtMsgType, qInstallMessageHandler
from loguru import logger

from log_monitor.config import ConfigManager
from log_monitor.controllers import LogController, SearchController
from log_monitor.core.provider import KubeLogProvider

QT_LEVELS = {
    QtMsgType.QtInfoMsg: "INFO",
    QtMsgType.QtWarningMsg: "WARNING",
    QtMsgType.QtCriticalMsg: "ERROR",
    QtMsgType.QtFatalMsg: "CRITICAL",
}


def qt_message_handler(mode, context, message):
    logger.log(QT_LEVELS.get(mode, "DEBUG"), f"[Qt] {message}")


def build_parser():
    parser = argparse.ArgumentParser(description="Follow a log file or Kubernetes pods", fromfile_prefix_chars='@')
    parser.add_argument("path", nargs="?", help="Log file to follow")
    parser.add_argument("--pods", nargs="+", metavar="NAME", help="Pod name prefixes to follow")
    parser.add_argument("--server", help="Kubernetes API server URL")
    parser.add_argument("--token", help="Bearer token for the API server")
    parser.add_argument("--insecure", action="store_true", help="Skip TLS certificate verification")
    parser.add_argument("--namespace", help="Namespace of the pods")
    parser.add_argument("--since", type=int, help="Seconds of history to fetch when a stream opens")
    parser.add_argument("--search", help="Report lines matching this text")
    parser.add_argument("--config", help="INI file to read settings from")
    parser.add_argument("--log-level", default="INFO", help="Diagnostic log level (stderr)")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if bool(args.path) == bool(args.pods):
        parser.error("give either a PATH or --pods")
    if args.pods and not args.server:
        parser.error("--pods needs --server")

    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper())
    qInstallMessageHandler(qt_message_handler)

    # Allow Ctrl+C to terminate from the console
    signal.signal(signal.SIGINT, signal.SIG_DFL)

    app = QCoreApplication(sys.argv[:1])
    app.setOrganizationName("LogMonitor")
    app.setApplicationName("Log Monitor")

    config = ConfigManager(args.config)
    controller = LogController(config)
    search = SearchController()

    if args.pods:
        provider = KubeLogProvider(args.server, token=args.token, verify=not args.insecure)
        session = controller.open_pods(provider, args.pods, namespace=args.namespace, since_seconds=args.since)
    else:
        session = controller.open_file(args.path)

    def print_update(update):
        if update.text:
            sys.stdout.write(update.text)
            sys.stdout.flush()

    session.log_updated.connect(print_update)
    session.source_failed.connect(lambda message: logger.error(f"Source failed: {message}"))
    if args.search:
        search.search_results_ready.connect(
            lambda results, query: logger.info(f"{len(results)} lines match '{query}'"))
        search.perform_search(session, args.search)

    app.aboutToQuit.connect(controller.close_all)
    return app.exec()


if __name__ == "__main__":
    sys.exit(main())
