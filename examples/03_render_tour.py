"""
Render the Tour Example
=======================

This example runs a selection of lessons with custom settings and writes
them as one self-contained HTML page.

The same can be done from the command line:
    lmmtour render -o tour.html --lessons simple,factorial,random_intercept
"""

import lmmtour

print("=" * 60)
print("RENDER THE TOUR")
print("=" * 60)

tour = lmmtour.Tour(seed=42)

# 1. Pick lessons (they always run in tour order)
tour.set_lessons("simple, factorial, random_intercept, recovery")

# 2. Override lesson settings
tour.set_lesson_config(
    {
        "simple": {"n": 60, "slope": 1.2},
        "random_intercept": {"n_clusters": 30, "intercept_sd": 3.0},
        "recovery": {"n_simulations": 200},
    }
)

# 3. Report progress with the console reporter
tour.set_progress("print")

tour.render("tour.html")
