import time

import tuffy

app = tuffy.App({"appName": "example", "debug": True})


class Cart:
    def __init__(self, items):
        self.items = items

    def to_debug(self):
        return "\n".join(f"{qty} x {name}" for name, qty in self.items.items())


@app.route("/")
def home(request: tuffy.Request, response: tuffy.Response):
    app.debug("Cart", Cart({"apple": 3, "pear": 1}))
    event = app.debug("Slow lookup", "SELECT * FROM prices")
    time.sleep(0.05)
    app.log.complete_event(event)
    for flash in app.get_flashes(request):
        response.write(f"<p class='{flash['type']}'>{flash['message']}</p>")
    response.write('<a href="crash">crash</a> | <a href="hop">redirect</a>')


@app.route("/hop")
def hop(request: tuffy.Request, response: tuffy.Response):
    app.debug("Hopping", "this message shows up on the next page")
    app.flash(request, "info", "You were redirected.")
    app.redirect(request, "index")


@app.route("/crash")
def crash(request: tuffy.Request, response: tuffy.Response):
    app.warn("About to fail", {"reason": "demonstration"})
    raise RuntimeError("Something broke")


def main():
    """Program entry point."""
    app.serve_forever()


if __name__ == '__main__':
    main()
