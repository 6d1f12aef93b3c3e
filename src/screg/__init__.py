"""Spinal cord anatomical and functional registration to the PAM50 template."""
