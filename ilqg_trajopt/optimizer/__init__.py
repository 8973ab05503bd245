"""iLQG outer loop and its passes.

Backward pass with regularization retries, line-searched forward
pass, Levenberg-Marquardt style regularization schedule and the
optional KL trust region on the trajectory distribution.
"""
