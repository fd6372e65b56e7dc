import gconf
import uvicorn

from coupon_core.app_factory import load_config


def main():
    load_config()
    uvicorn.run(
        "coupon_core:create_app",
        factory=True,
        host=gconf.get("server.host"),
        port=gconf.get("server.port"),
    )


if __name__ == "__main__":
    main()
