"""`python -m cafepay.services.checkout_proxy` serves the proxy on `PORT`."""

from cafepay.services.checkout_proxy.main import run

if __name__ == "__main__":
    run()
