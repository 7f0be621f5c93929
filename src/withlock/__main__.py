from withlock.main import withlock

if __name__ == "__main__":  # pragma: no cover
    withlock(prog_name="withlock")
