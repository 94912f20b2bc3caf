import sys

from invoke import run, task


class g:
    test_success = False


@task
def test(ctx, all=False):
    test_cmd = [
        "pytest",  # Test command
        "--cov-report term-missing",  # Print only uncovered lines to stdout
        "--cov conn_adapter",  # Test only this package
        "--timeout=30",  # Each test should timeout after 30 sec
    ]

    # Test in this directory
    test_cmd.append("tests")

    res = run(" ".join(test_cmd), pty=False)
    g.test_success = res.ok


@task
def fuzz(ctx, target="form", runs=10000):
    run("python fuzz/fuzz_%s.py -runs=%d" % (target, int(runs)), pty=False)


@task(pre=[test])
def deploy(ctx):
    if not g.test_success:
        print("Tests must pass before deploying!", file=sys.stderr)
        return

    # Build source distribution and wheel
    run("python setup.py sdist bdist_wheel")
