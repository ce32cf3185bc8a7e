"""SimSmile: smile capture, facial analysis and ideal smile simulation."""
