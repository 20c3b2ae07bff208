"""Target resolution, attachment security and delivery dispatch"""
