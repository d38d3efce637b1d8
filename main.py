import argparse
import logging
import sys
import threading


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Local media stream proxy")
    parser.add_argument("--config", help="path to config.json (default: next to this script)")
    parser.add_argument("--host", help="interface to bind (default from config)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    from mediaproxy.config import ConfigManager
    from mediaproxy.service import PROXY_SERVER_STARTED, ProxyService

    config_manager = ConfigManager(args.config)
    if args.host:
        config_manager.config["bind_host"] = args.host

    level = str(args.log_level or config_manager.get("log_level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
    )

    service = ProxyService.from_config(config_manager)
    service.subscribe(PROXY_SERVER_STARTED, lambda port: print(f"proxy-server-started {port}", flush=True))
    service.start()

    port = service.get_proxy_port()
    if not port:
        logging.getLogger("main").error("Stream proxy did not come up")

    stop = threading.Event()
    try:
        # Event.wait with a timeout keeps Ctrl+C responsive on Windows.
        while not stop.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        service.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
